from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Awaitable, Callable

from ulazy.models import HostEvent

logger: logging.Logger = logging.getLogger(__name__)

EventHandler = Callable[[HostEvent], Any]
CompletionCallback = Callable[[BaseException | None], None]


class EventBus(object):
    """Single-threaded cooperative dispatch of host events.

    Handlers run one after another on the thread driving the bus and must not
    block; long running work goes through :meth:`spawn` and reports back through
    its completion callback.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._queue: deque[HostEvent] = deque()
        self._queue_guard = threading.Lock()
        self._deferred: list[tuple[Awaitable[Any], CompletionCallback]] = []
        self._tasks: set[asyncio.Future[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self._closed = False

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_events(self) -> int:
        with self._queue_guard:
            return len(self._queue)

    def post(self, event: HostEvent) -> None:
        """Queue ``event`` for dispatch; safe to call from any thread."""
        if self._closed:
            logger.debug(f"Dropping {event} posted after close")
            return
        with self._queue_guard:
            self._queue.append(event)
        self._notify()

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
        else:
            loop.call_soon_threadsafe(wakeup.set)

    def _next_event(self) -> HostEvent | None:
        with self._queue_guard:
            return self._queue.popleft() if self._queue else None

    def dispatch(self, event: HostEvent) -> list[Any]:
        """Hand ``event`` to every handler right away and collect their results."""
        results: list[Any] = []
        for handler in list(self._handlers):
            try:
                results.append(handler(event))
            except Exception:
                logger.exception(f"Event handler failed for {event}")
        return results

    def dispatch_pending(self) -> int:
        """Dispatch everything queued so far (for hosts that pump the bus themselves)."""
        count = 0
        while True:
            event = self._next_event()
            if event is None:
                return count
            self.dispatch(event)
            count += 1

    def spawn(self, work: Awaitable[Any], callback: CompletionCallback) -> None:
        """Run ``work`` on the bus loop and report its outcome through ``callback``."""
        loop = self._loop
        if loop is None or loop.is_closed():
            # started once the loop runs
            self._deferred.append((work, callback))
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._start(work, callback)
        else:
            loop.call_soon_threadsafe(self._start, work, callback)

    def _start(self, work: Awaitable[Any], callback: CompletionCallback) -> None:
        task = asyncio.ensure_future(work)
        self._tasks.add(task)

        def _done(finished: asyncio.Future[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                callback(asyncio.CancelledError())
                return
            callback(finished.exception())

        task.add_done_callback(_done)

    def _attach(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        deferred, self._deferred = self._deferred, []
        for work, callback in deferred:
            self._start(work, callback)

    async def run(self) -> None:
        """Dispatch events until :meth:`close` is called."""
        self._attach()
        wakeup = self._wakeup
        try:
            while not self._closed and wakeup is not None:
                self.dispatch_pending()
                if self._closed:
                    break
                await wakeup.wait()
                wakeup.clear()
        finally:
            self._loop = None
            self._wakeup = None

    async def drain(self) -> None:
        """Dispatch queued events and wait for spawned work to settle."""
        if self._loop is not asyncio.get_running_loop():
            self._attach()
        while True:
            self.dispatch_pending()
            if not self._tasks:
                if self.pending_events == 0:
                    return
                continue
            await asyncio.wait(set(self._tasks))

    def close(self) -> None:
        """Stop :meth:`run` and cancel outstanding spawned work."""
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        for work, callback in self._deferred:
            if asyncio.iscoroutine(work):
                work.close()
            callback(asyncio.CancelledError())
        self._deferred.clear()
        self._notify()
