"""Extension activation.

Every extension is reduced to one capability: a ``setup(config)`` callable.
The activator calls it at most once per extension, dependencies first, either
during the eager start-up pass or when a matching host event arrives.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from ulazy.exceptions import (
    ActivationError,
    ExtensionNotFoundError,
    ExtensionNotRegisteredError,
)
from ulazy.models import ActivationState, ExtensionSpec, HostEvent, Trigger

logger: logging.Logger = logging.getLogger(__name__)

SetupCallable = Callable[[Mapping[str, Any]], Any]
PathLookup = Callable[[str], Path]
Spawn = Callable[[Awaitable[Any], Callable[[BaseException | None], None]], None]


class Extension(Protocol):
    def setup(self, config: Mapping[str, Any]) -> Any: ...


class ExtensionLoader(Protocol):
    def load(self, spec: ExtensionSpec, path: Path | None) -> SetupCallable: ...


class ModuleLoader(object):
    """Import an extension's entry module from its installed source tree."""

    def load(self, spec: ExtensionSpec, path: Path | None) -> SetupCallable:
        if path is None:
            raise ExtensionNotFoundError(f"Extension not installed: {spec.name}")
        module_name, attribute = spec.entry_point
        module = self._import(spec.name, module_name, path)
        setup = getattr(module, attribute, None)
        if not callable(setup):
            raise AttributeError(
                f"{module_name} does not provide a callable {attribute!r}"
            )
        return setup

    def _import(self, name: str, module_name: str, path: Path) -> ModuleType:
        relative = Path(*module_name.split("."))
        candidates = [
            path.joinpath(relative).with_suffix(".py"),
            path.joinpath(relative, "__init__.py"),
        ]
        location = next((item for item in candidates if item.is_file()), None)
        if location is None:
            raise ImportError(f"No module {module_name!r} in {path}")

        qualified = f"ulazy_extensions.{name.replace('.', '_').replace('-', '_')}"
        search = [str(location.parent)] if location.name == "__init__.py" else None
        module_spec = importlib.util.spec_from_file_location(
            qualified, location, submodule_search_locations=search
        )
        if module_spec is None or module_spec.loader is None:
            raise ImportError(f"Cannot load {location}")
        module = importlib.util.module_from_spec(module_spec)
        sys.modules[qualified] = module
        try:
            module_spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(qualified, None)
            raise
        return module


class RegistryLoader(object):
    """Serve extensions the host provides in-process, falling back to another loader."""

    def __init__(
        self,
        extensions: Mapping[str, Extension | SetupCallable] | None = None,
        fallback: ExtensionLoader | None = None,
    ) -> None:
        self.extensions: dict[str, Extension | SetupCallable] = dict(extensions or {})
        self.fallback = fallback

    def add(self, name: str, extension: Extension | SetupCallable) -> None:
        self.extensions[name] = extension

    def load(self, spec: ExtensionSpec, path: Path | None) -> SetupCallable:
        extension = self.extensions.get(spec.name)
        if extension is None:
            if self.fallback is None:
                raise LookupError(f"No extension registered for {spec.name}")
            return self.fallback.load(spec, path)
        setup = getattr(extension, "setup", extension)
        if not callable(setup):
            raise AttributeError(f"{spec.name} does not provide a callable setup")
        return setup


@dataclass
class _Entry:
    spec: ExtensionSpec
    triggers: list[Trigger]
    state: ActivationState = ActivationState.NOT_LOADED
    error: ActivationError | None = None
    setup_calls: int = 0
    gate: threading.Lock = field(default_factory=threading.Lock)


class Activator(object):
    """Track activation state and run setup entry points at most once."""

    def __init__(
        self,
        loader: ExtensionLoader | None = None,
        path_lookup: PathLookup | None = None,
        spawn: Spawn | None = None,
    ) -> None:
        self.loader: ExtensionLoader = loader or ModuleLoader()
        self.path_lookup = path_lookup
        self.spawn = spawn
        self._entries: dict[str, _Entry] = {}
        self._registry_guard = threading.Lock()
        self._listeners: list[Callable[[str, ActivationState], None]] = []

    def register(self, spec: ExtensionSpec) -> None:
        """Record ``spec`` and its triggers without loading it."""
        with self._registry_guard:
            existing = self._entries.get(spec.name)
            if existing is not None:
                if existing.spec != spec:
                    logger.warning(f"Re-registering {spec.name} with a new spec")
                existing.spec = spec
                existing.triggers = list(dict.fromkeys([*existing.triggers, *spec.triggers]))
                return
            self._entries[spec.name] = _Entry(spec=spec, triggers=list(spec.triggers))

    def register_all(self, specs: Iterable[ExtensionSpec]) -> None:
        for spec in specs:
            self.register(spec)

    def add_trigger(self, name: str, trigger: Trigger) -> None:
        entry = self._entry(name)
        with self._registry_guard:
            if trigger not in entry.triggers:
                entry.triggers.append(trigger)

    def on_state_change(self, listener: Callable[[str, ActivationState], None]) -> None:
        self._listeners.append(listener)

    def is_registered(self, name: str) -> bool:
        return name in self._entries

    def state(self, name: str) -> ActivationState:
        return self._entry(name).state

    def states(self) -> dict[str, ActivationState]:
        return {name: entry.state for name, entry in self._entries.items()}

    def error(self, name: str) -> ActivationError | None:
        return self._entry(name).error

    def failures(self) -> dict[str, ActivationError]:
        return {
            name: entry.error
            for name, entry in self._entries.items()
            if entry.state is ActivationState.FAILED and entry.error is not None
        }

    def setup_calls(self, name: str) -> int:
        return self._entry(name).setup_calls

    def _entry(self, name: str) -> _Entry:
        entry = self._entries.get(name)
        if entry is None:
            raise ExtensionNotRegisteredError(name)
        return entry

    def activate(self, name: str) -> ActivationState:
        """Load ``name`` (and its dependencies) unless that already happened."""
        entry = self._entry(name)
        with entry.gate:
            if entry.state is not ActivationState.NOT_LOADED:
                return entry.state
            self._set_state(entry, ActivationState.LOADING)
        return self._run_setup(entry)

    def retry(self, name: str) -> ActivationState:
        """Give a failed extension another chance (``Failed -> Loading``)."""
        entry = self._entry(name)
        with entry.gate:
            if entry.state is not ActivationState.FAILED:
                return entry.state
            entry.error = None
            self._set_state(entry, ActivationState.LOADING)
        return self._run_setup(entry)

    def activate_eager(self, order: Iterable[str]) -> dict[str, ActivationState]:
        """Activate every eager extension, following the resolver's order."""
        result: dict[str, ActivationState] = {}
        for name in order:
            entry = self._entries.get(name)
            if entry is None or not entry.spec.eager:
                continue
            result[name] = self.activate(name)
        return result

    def handle_event(self, event: HostEvent) -> list[str]:
        """Activate the not-yet-loaded extensions whose trigger matches ``event``."""
        with self._registry_guard:
            candidates = [
                entry.spec.name
                for entry in self._entries.values()
                if entry.state is ActivationState.NOT_LOADED
                and any(trigger.matches(event) for trigger in entry.triggers)
            ]
        activated = []
        for name in candidates:
            state = self.activate(name)
            if state in (ActivationState.LOADED, ActivationState.LOADING):
                activated.append(name)
        if candidates:
            logger.debug(f"{event.kind.value}:{event.value} activated {activated}")
        return activated

    def _run_setup(self, entry: _Entry) -> ActivationState:
        spec = entry.spec
        for dependency in spec.dependencies:
            if dependency not in self._entries:
                return self._fail(entry, f"dependency {dependency} is not registered")
            dependency_state = self.activate(dependency)
            if dependency_state is ActivationState.FAILED:
                return self._fail(entry, f"dependency {dependency} failed to load")

        try:
            path = self.path_lookup(spec.name) if self.path_lookup else None
            setup = self.loader.load(spec, path)
            entry.setup_calls += 1
            outcome = setup(dict(spec.config))
        except Exception as exc:
            logger.debug(f"Setup of {spec.name} raised", exc_info=True)
            return self._fail(entry, f"{type(exc).__name__}: {exc}", exc)

        if inspect.isawaitable(outcome):
            if self.spawn is None:
                if inspect.iscoroutine(outcome):
                    outcome.close()
                return self._fail(entry, "asynchronous setup needs an event bus")
            self.spawn(outcome, lambda exc: self._complete(entry, exc))
            return entry.state

        self._set_state(entry, ActivationState.LOADED)
        logger.info(f"Loaded {spec.name}")
        return entry.state

    def _complete(self, entry: _Entry, exc: BaseException | None) -> None:
        if exc is not None:
            self._fail(entry, f"{type(exc).__name__}: {exc}", exc)
            return
        self._set_state(entry, ActivationState.LOADED)
        logger.info(f"Loaded {entry.spec.name}")

    def _fail(
        self, entry: _Entry, message: str, cause: BaseException | None = None
    ) -> ActivationState:
        error = ActivationError(entry.spec.name, message)
        error.__cause__ = cause
        entry.error = error
        self._set_state(entry, ActivationState.FAILED)
        logger.error(f"Failed to load {error}")
        return entry.state

    def _set_state(self, entry: _Entry, state: ActivationState) -> None:
        entry.state = state
        for listener in list(self._listeners):
            listener(entry.spec.name, state)
