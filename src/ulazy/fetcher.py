from __future__ import annotations

import asyncio
import logging
import subprocess
import threading

from ulazy.api_client import SourceClient
from ulazy.exceptions import (
    BuildError,
    ExtensionNotFoundError,
    FetchCancelledError,
    FetchError,
    TransientFetchError,
)
from ulazy.install_engine import RunCommand, run_build_command
from ulazy.internal_config import DEFAULT_FETCH_CONCURRENCY, FETCH_RETRIES
from ulazy.lockfile import Lockfile
from ulazy.models import (
    BuildStatus,
    FetchResult,
    FetchStatus,
    PlanAction,
    PlanItem,
)
from ulazy.store import Store

logger: logging.Logger = logging.getLogger(__name__)


class Fetcher(object):
    """Bring the store in line with an install plan.

    Fetches run concurrently (bounded by ``concurrency``) in worker threads;
    build steps additionally wait until the extension's dependencies are done.
    A failing extension never aborts its siblings.
    """

    def __init__(
        self,
        store: Store,
        lockfile: Lockfile,
        client: SourceClient,
        concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        run_command: RunCommand = subprocess.run,
        retries: int = FETCH_RETRIES,
    ) -> None:
        self.store = store
        self.lockfile = lockfile
        self.client = client
        self.concurrency = max(1, concurrency)
        self.run_command = run_command
        self.retries = retries
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop publishing new trees; in-flight work is discarded before it lands."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run(self, plan: list[PlanItem]) -> list[FetchResult]:
        """Execute ``plan`` (in resolver order) and return one result per item."""
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks: dict[str, asyncio.Task[FetchResult]] = {}
        for item in plan:
            dependency_tasks = [
                tasks[name] for name in item.spec.dependencies if name in tasks
            ]
            tasks[item.spec.name] = asyncio.create_task(
                self._process(item, dependency_tasks, semaphore),
                name=f"fetch:{item.spec.name}",
            )

        try:
            results = list(await asyncio.gather(*tasks.values()))
        except asyncio.CancelledError:
            self.cancel()
            for task in tasks.values():
                task.cancel()
            raise

        self._record_lock_entries(plan, results)
        return results

    async def _process(
        self,
        item: PlanItem,
        dependency_tasks: list[asyncio.Task[FetchResult]],
        semaphore: asyncio.Semaphore,
    ) -> FetchResult:
        spec = item.spec
        if item.action is PlanAction.KEEP:
            result = FetchResult(
                name=spec.name, status=FetchStatus.UNCHANGED, ref=item.installed_ref
            )
            needs_build = bool(spec.build) and self._build_outstanding(spec.name)
        else:
            async with semaphore:
                result = await asyncio.to_thread(self._fetch_sync, item)
            needs_build = bool(spec.build) and result.status in (
                FetchStatus.INSTALLED,
                FetchStatus.UPDATED,
            )

        if not needs_build:
            return result

        if dependency_tasks:
            # builds may rely on their dependencies being on disk
            await asyncio.gather(*dependency_tasks)
        async with semaphore:
            return await asyncio.to_thread(self._build_sync, item, result)

    def _build_outstanding(self, name: str) -> bool:
        try:
            return self.store.info(name).build_status is not BuildStatus.OK
        except ExtensionNotFoundError:
            return False

    def _fetch_sync(self, item: PlanItem) -> FetchResult:
        spec = item.spec
        attempts = 0
        with self.store.lock(spec.name):
            while True:
                attempts += 1
                try:
                    return self._fetch_once(item, attempts)
                except TransientFetchError as exc:
                    if attempts <= self.retries and not self.cancelled:
                        logger.warning(f"{spec.name}: {exc} - retrying")
                        continue
                    return self._failed(item, exc, attempts)
                except (FetchError, OSError) as exc:
                    return self._failed(item, exc, attempts)
                except Exception as exc:
                    logger.debug(f"Fetch of {spec.name} raised", exc_info=True)
                    return self._failed(item, exc, attempts)

    def _fetch_once(self, item: PlanItem, attempts: int) -> FetchResult:
        spec = item.spec
        self._raise_if_cancelled(spec.name)
        with self.store.staging(spec.name) as work_dir:
            target_ref = item.target_ref
            if item.action is PlanAction.UPDATE:
                remote_ref = self.client.remote_ref(spec.source)
                if remote_ref and remote_ref == item.installed_ref:
                    logger.info(f"{spec.name} is up to date ({remote_ref})")
                    return FetchResult(
                        name=spec.name,
                        status=FetchStatus.UNCHANGED,
                        ref=remote_ref,
                        previous_ref=item.installed_ref,
                        attempts=attempts,
                    )
                target_ref = remote_ref

            tree, ref = self.client.checkout(spec.source, target_ref, work_dir)
            if item.installed_ref and ref == item.installed_ref:
                return FetchResult(
                    name=spec.name,
                    status=FetchStatus.UNCHANGED,
                    ref=ref,
                    previous_ref=item.installed_ref,
                    attempts=attempts,
                )

            self._raise_if_cancelled(spec.name)
            self.store.put(
                spec.name,
                tree,
                ref=ref,
                source_uri=spec.source.uri,
                build_status=BuildStatus.PENDING if spec.build else BuildStatus.OK,
                move=True,
            )

        status = (
            FetchStatus.INSTALLED
            if item.action is PlanAction.INSTALL
            else FetchStatus.UPDATED
        )
        logger.info(f"{spec.name}: {status.value} {ref}")
        return FetchResult(
            name=spec.name,
            status=status,
            ref=ref,
            previous_ref=item.installed_ref,
            attempts=attempts,
        )

    def _build_sync(self, item: PlanItem, result: FetchResult) -> FetchResult:
        spec = item.spec
        with self.store.lock(spec.name):
            try:
                self._raise_if_cancelled(spec.name)
                logger.info(f"Building {spec.name}: {spec.build}")
                run_build_command(
                    build=spec.build,
                    extension_dir=self.store.get(spec.name),
                    run_command=self.run_command,
                )
            except (BuildError, FetchCancelledError, ExtensionNotFoundError) as exc:
                return self._build_failed(item, result, exc)
            except Exception as exc:
                logger.debug(f"Build of {spec.name} raised", exc_info=True)
                return self._build_failed(item, result, exc)
            self.store.set_build_status(spec.name, BuildStatus.OK)
        return result

    def _build_failed(
        self, item: PlanItem, result: FetchResult, exc: Exception
    ) -> FetchResult:
        name = item.spec.name
        if self.store.has(name):
            self.store.set_build_status(name, BuildStatus.FAILED, str(exc))
        logger.error(f"{name}: {exc}")
        return FetchResult(
            name=name,
            status=FetchStatus.FAILED,
            ref=result.ref,
            previous_ref=result.previous_ref,
            error=str(exc),
            attempts=result.attempts,
        )

    def _raise_if_cancelled(self, name: str) -> None:
        if self.cancelled:
            raise FetchCancelledError(f"Fetch of {name} cancelled")

    def _failed(self, item: PlanItem, exc: Exception, attempts: int) -> FetchResult:
        logger.error(f"{item.spec.name}: {exc}")
        return FetchResult(
            name=item.spec.name,
            status=FetchStatus.FAILED,
            ref=item.installed_ref,
            previous_ref=item.installed_ref,
            error=str(exc),
            attempts=attempts,
        )

    def _record_lock_entries(
        self, plan: list[PlanItem], results: list[FetchResult]
    ) -> None:
        for item, result in zip(plan, results):
            if result.failed or not result.ref:
                continue
            spec = item.spec
            if item.action is PlanAction.KEEP and spec.name in self.lockfile:
                continue
            self.lockfile.set(
                spec.name, result.ref, branch=spec.source.branch or spec.source.tag
            )
        if self.lockfile.dirty:
            self.lockfile.save()
