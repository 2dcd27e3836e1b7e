#! /bin/env python3
from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Iterable

import typer

from ulazy.activator import Activator, ExtensionLoader, ModuleLoader
from ulazy.api_client import SourceClient
from ulazy.exceptions import LockfileError, ManifestError, ResolutionError
from ulazy.fetcher import Fetcher
from ulazy.install_engine import RunCommand
from ulazy.internal_config import DEFAULT_USER_AGENT, LOCKFILE_NAME, ULAZY_VERSION
from ulazy.lockfile import Lockfile
from ulazy.manifest import Manifest, load_manifest
from ulazy.models import (
    ActivationState,
    BuildStatus,
    FetchResult,
    FetchStatus,
    HostEvent,
    Trigger,
)
from ulazy.paths import (
    default_lockfile_path,
    resolve_concurrency,
    resolve_config_path,
    resolve_data_root,
)
from ulazy.report import OperationReport, StatusRow, render_table
from ulazy.resolver import Resolver
from ulazy.scheduler import EventBus
from ulazy.store import Store

app: typer.Typer = typer.Typer(no_args_is_help=True)
logger: logging.Logger = logging.getLogger(__name__)


class ExtensionManager(object):
    """Process-wide extension state: manifest, store, lockfile, fetcher and activator.

    Created from a manifest (which is resolved right away, so manifest and
    dependency errors surface before any I/O) and torn down with
    :meth:`shutdown`. Components get the state passed in; nothing is global.
    """

    manifest: Manifest
    resolver: Resolver
    order: list[str]
    store: Store
    lockfile: Lockfile
    client: SourceClient
    fetcher: Fetcher
    bus: EventBus
    activator: Activator

    def __init__(
        self,
        manifest: Manifest,
        root: str | Path = "",
        lockfile_path: str | Path = "",
        concurrency: int | None = None,
        loader: ExtensionLoader | None = None,
        client: SourceClient | None = None,
        run_command: RunCommand = subprocess.run,
    ) -> None:
        self.manifest = manifest
        self.resolver = Resolver(manifest.specs, manifest.disabled)
        self.order = self.resolver.resolve_names()

        data_root = self._data_root(root)
        self.store = Store(data_root.joinpath("extensions"))
        self.lockfile = Lockfile(self._lockfile_path(lockfile_path, data_root))

        workers = resolve_concurrency(concurrency, manifest.options.concurrency)
        self.client = client or SourceClient(run_command=run_command, pool_size=workers)
        self.fetcher = Fetcher(
            store=self.store,
            lockfile=self.lockfile,
            client=self.client,
            concurrency=workers,
            run_command=run_command,
        )

        self.bus = EventBus()
        self.activator = Activator(
            loader=loader or ModuleLoader(),
            path_lookup=self.store.get,
            spawn=self.bus.spawn,
        )
        self.bus.subscribe(self.activator.handle_event)
        self.last_results: dict[str, FetchResult] = {}
        self._started = False

    @classmethod
    def from_config(
        cls,
        config_name: str = "",
        root: str = "",
        lockfile_path: str = "",
        concurrency: int | None = None,
        loader: ExtensionLoader | None = None,
    ) -> ExtensionManager:
        """Load the manifest file and build a manager for it."""
        config_path = resolve_config_path(config_name)
        manifest = load_manifest(config_path)
        if not lockfile_path and not manifest.options.lockfile:
            lockfile_path = str(default_lockfile_path(config_path))
        return cls(
            manifest,
            root=root,
            lockfile_path=lockfile_path,
            concurrency=concurrency,
            loader=loader,
        )

    def _data_root(self, root: str | Path) -> Path:
        if root:
            return Path(root).expanduser().absolute()
        if self.manifest.options.root:
            return Path(self.manifest.options.root).expanduser().absolute()
        return resolve_data_root()

    def _lockfile_path(self, lockfile_path: str | Path, data_root: Path) -> Path:
        if lockfile_path:
            return Path(lockfile_path).expanduser().absolute()
        configured = self.manifest.options.lockfile
        if configured:
            path = Path(configured).expanduser()
            origin = Path(self.manifest.origin)
            if not path.is_absolute() and origin.is_file():
                path = origin.parent.joinpath(path)
            return path.absolute()
        return data_root.joinpath(LOCKFILE_NAME)

    def __enter__(self) -> ExtensionManager:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.shutdown()

    async def install_async(self) -> OperationReport:
        """Install everything missing; keep what matches the lockfile untouched."""
        return await self._sync("install", update=False)

    def install(self) -> OperationReport:
        return asyncio.run(self.install_async())

    async def update_async(self, names: Iterable[str] | None = None) -> OperationReport:
        """Move extensions (all, or ``names``) to their latest ref and rewrite the lock."""
        return await self._sync("update", update=True, only=names)

    def update(self, names: Iterable[str] | None = None) -> OperationReport:
        return asyncio.run(self.update_async(names))

    async def _sync(
        self, operation: str, update: bool, only: Iterable[str] | None = None
    ) -> OperationReport:
        selected = list(only) if only else None
        plan = self.resolver.plan(
            self.store.installed(), self.lockfile, update=update, only=selected
        )
        logger.info(f"{operation}: {len(plan)} extension(s) in manifest")
        results = await self.fetcher.run(plan)
        self.last_results.update({result.name: result for result in results})
        report = OperationReport(
            operation=operation,
            rows=[
                StatusRow.from_result(result, self._activation_label(result.name))
                for result in results
            ],
        )
        if report.failed:
            logger.error(report.summary())
        else:
            logger.info(report.summary())
        return report

    def clean(self) -> OperationReport:
        """Delete installed extensions the manifest no longer references."""
        removed = self.store.clean(self.order)
        pruned = self.lockfile.prune(set(self.order))
        if self.lockfile.dirty:
            self.lockfile.save()
        self.store.collect_garbage()
        rows = [StatusRow(name=name, status="removed") for name in removed]
        rows.extend(
            StatusRow(name=name, status="unlocked")
            for name in pruned
            if name not in removed
        )
        return OperationReport(operation="clean", rows=rows)

    def startup(self) -> dict[str, ActivationState]:
        """Register every extension and activate the eager ones in resolver order."""
        if not self._started:
            for name in self.order:
                self.activator.register(self.resolver.specs[name])
            self._started = True
        return self.activator.activate_eager(self.order)

    def emit(self, event: HostEvent) -> None:
        """Queue a host event; it is dispatched by the event bus."""
        self.bus.post(event)

    def trigger(self, event: HostEvent) -> list[str]:
        """Dispatch a host event immediately and return the extensions it activated."""
        activated: list[str] = []
        for result in self.bus.dispatch(event):
            activated.extend(result or [])
        return activated

    def add_trigger(self, name: str, trigger: Trigger) -> None:
        self.activator.add_trigger(name, trigger)

    def _activation_label(self, name: str) -> str:
        if not self.activator.is_registered(name):
            return ""
        return self.activator.state(name).value

    def status(self) -> OperationReport:
        """Describe every manifest extension: install state, ref and activation."""
        installed = self.store.installed()
        rows: list[StatusRow] = []
        for name in self.order:
            info = installed.get(name)
            last = self.last_results.get(name)
            failed = False
            detail = ""
            if last is not None and last.status is FetchStatus.FAILED:
                failed, detail = True, last.error
            elif info is None:
                detail = "not installed"
            elif info.build_status is BuildStatus.FAILED:
                failed, detail = True, info.build_message or "build failed"
            activation_error = (
                self.activator.error(name) if self.activator.is_registered(name) else None
            )
            if activation_error is not None:
                failed, detail = True, str(activation_error)
            rows.append(
                StatusRow(
                    name=name,
                    status="installed" if info else "missing",
                    ref=info.ref if info else "",
                    activation=self._activation_label(name),
                    detail=detail,
                    failed=failed,
                )
            )
        return OperationReport(operation="status", rows=rows)

    def shutdown(self) -> None:
        """Cancel in-flight fetches, stop the event bus and release network resources."""
        self.fetcher.cancel()
        self.bus.close()
        self.client.close()


def _configure_logging(log_level: str) -> None:
    _log_level = getattr(logging, log_level.upper(), None)
    if not isinstance(_log_level, int):
        raise typer.BadParameter(f"Invalid log level: {log_level!r}")
    logging.basicConfig(
        level=_log_level,
        format="%(relativeCreated)d [%(levelname)s] %(message)s",
    )


def _load_manager(
    config_name: str, root: str, lockfile: str, concurrency: int | None
) -> ExtensionManager:
    try:
        return ExtensionManager.from_config(
            config_name=config_name,
            root=root,
            lockfile_path=lockfile,
            concurrency=concurrency,
        )
    except (ManifestError, ResolutionError, LockfileError) as exc:
        logger.error(f"{exc}")
        raise typer.Exit(code=2) from exc
    except ValueError as exc:
        logger.error(f"Invalid configuration: {exc}")
        raise typer.Exit(code=2) from exc


def _finish(manager: ExtensionManager, report: OperationReport) -> None:
    manager.shutdown()
    if report.rows:
        typer.echo(render_table(report.rows))
    typer.echo(report.summary())
    raise typer.Exit(code=report.exit_code)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"ulazy {ULAZY_VERSION}")
        typer.echo(f"User-Agent: {DEFAULT_USER_AGENT}")
        raise typer.Exit()


@app.callback()
def cli(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Declarative extension manager: install, update and clean extensions."""


@app.command()
def install(
    config_name: str = typer.Option("", "--config", help="Manifest file (YAML)."),
    root: str = typer.Option("", help="Data root holding the extension store."),
    lockfile: str = typer.Option("", help="Lockfile path."),
    concurrency: int | None = typer.Option(None, min=1, help="Parallel fetches."),
    log_level: str = "info",
) -> None:
    """Install all extensions listed in the manifest."""
    _configure_logging(log_level)
    manager = _load_manager(config_name, root, lockfile, concurrency)
    _finish(manager, manager.install())


@app.command()
def update(
    names: list[str] | None = typer.Argument(None, help="Extensions to update."),
    config_name: str = typer.Option("", "--config", help="Manifest file (YAML)."),
    root: str = typer.Option("", help="Data root holding the extension store."),
    lockfile: str = typer.Option("", help="Lockfile path."),
    concurrency: int | None = typer.Option(None, min=1, help="Parallel fetches."),
    log_level: str = "info",
) -> None:
    """Update all (or the named) extensions and rewrite their lock entries."""
    _configure_logging(log_level)
    manager = _load_manager(config_name, root, lockfile, concurrency)
    try:
        report = manager.update(names or None)
    except ResolutionError as exc:
        manager.shutdown()
        logger.error(f"{exc}")
        raise typer.Exit(code=2) from exc
    _finish(manager, report)


@app.command()
def clean(
    config_name: str = typer.Option("", "--config", help="Manifest file (YAML)."),
    root: str = typer.Option("", help="Data root holding the extension store."),
    lockfile: str = typer.Option("", help="Lockfile path."),
    log_level: str = "info",
) -> None:
    """Remove installed extensions that are no longer in the manifest."""
    _configure_logging(log_level)
    manager = _load_manager(config_name, root, lockfile, None)
    _finish(manager, manager.clean())


@app.command()
def status(
    config_name: str = typer.Option("", "--config", help="Manifest file (YAML)."),
    root: str = typer.Option("", help="Data root holding the extension store."),
    lockfile: str = typer.Option("", help="Lockfile path."),
    log_level: str = "warning",
) -> None:
    """Show what is installed for every manifest extension."""
    _configure_logging(log_level)
    manager = _load_manager(config_name, root, lockfile, None)
    _finish(manager, manager.status())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
