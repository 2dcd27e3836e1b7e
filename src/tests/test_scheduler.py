from __future__ import annotations

import asyncio
import threading

import pytest

from ulazy.models import HostEvent
from ulazy.scheduler import EventBus


def test_dispatch_pending_delivers_events_in_order() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(lambda event: seen.append(f"a:{event.value}"))
    bus.subscribe(lambda event: seen.append(f"b:{event.value}"))

    bus.post(HostEvent.command("One"))
    bus.post(HostEvent.filetype("python"))
    assert bus.pending_events == 2

    assert bus.dispatch_pending() == 2
    assert seen == ["a:One", "b:One", "a:python", "b:python"]
    assert bus.pending_events == 0


def test_failing_handler_does_not_stop_others(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    seen: list[str] = []

    def _broken(event: HostEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe(_broken)
    bus.subscribe(lambda event: seen.append(event.value))

    results = bus.dispatch(HostEvent.named("VimEnter"))

    assert seen == ["VimEnter"]
    assert results == [None]
    assert "Event handler failed" in caplog.text


def test_run_dispatches_events_posted_from_other_threads() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(lambda event: seen.append(event.value))

    async def _main() -> None:
        runner = asyncio.create_task(bus.run())
        await asyncio.sleep(0)
        posters = [
            threading.Thread(target=bus.post, args=(HostEvent.command(f"C{index}"),))
            for index in range(5)
        ]
        for poster in posters:
            poster.start()
        for poster in posters:
            poster.join()
        for _ in range(100):
            if len(seen) == 5:
                break
            await asyncio.sleep(0.01)
        bus.close()
        await asyncio.wait_for(runner, timeout=1)

    asyncio.run(_main())

    assert sorted(seen) == [f"C{index}" for index in range(5)]
    assert bus.closed is True


def test_spawned_work_waits_for_a_loop_and_reports_back() -> None:
    bus = EventBus()
    outcomes: list[BaseException | None] = []

    async def _work() -> None:
        await asyncio.sleep(0)

    async def _broken() -> None:
        raise KeyError("missing")

    bus.spawn(_work(), outcomes.append)
    bus.spawn(_broken(), outcomes.append)
    assert outcomes == []

    asyncio.run(bus.drain())

    assert outcomes[0] is None
    assert isinstance(outcomes[1], KeyError)


def test_close_cancels_deferred_work_and_drops_new_events() -> None:
    bus = EventBus()
    outcomes: list[BaseException | None] = []

    async def _never() -> None:
        await asyncio.sleep(10)

    bus.spawn(_never(), outcomes.append)
    bus.close()
    bus.post(HostEvent.command("Late"))

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], asyncio.CancelledError)
    assert bus.pending_events == 0


def test_close_cancels_running_work() -> None:
    bus = EventBus()
    outcomes: list[BaseException | None] = []

    async def _main() -> None:
        runner = asyncio.create_task(bus.run())
        await asyncio.sleep(0)
        bus.spawn(asyncio.sleep(10), outcomes.append)
        await asyncio.sleep(0)
        bus.close()
        await asyncio.wait_for(runner, timeout=1)
        await asyncio.sleep(0.01)

    asyncio.run(_main())

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], asyncio.CancelledError)
