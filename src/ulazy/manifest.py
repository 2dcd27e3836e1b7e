"""Manifest loading.

A manifest is an ordered list of extension specs supplied by the host, either
as a YAML file or as plain Python data.
Everything here fails closed with ``ManifestError`` before any I/O happens on
the store.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

import yaml

from ulazy.exceptions import ManifestError
from ulazy.internal_config import GITHUB_URL_FORMAT
from ulazy.models import (
    ExtensionSpec,
    SourceKind,
    SourceLocator,
    Trigger,
    TriggerKind,
)

logger: logging.Logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")
_SHORTHAND_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+/[A-Za-z0-9_.\-]+$")
_KNOWN_KEYS = frozenset(
    {
        "1",
        "name",
        "url",
        "source",
        "dir",
        "branch",
        "tag",
        "commit",
        "dependencies",
        "cmd",
        "ft",
        "keys",
        "event",
        "lazy",
        "build",
        "config",
        "opts",
        "main",
        "enabled",
    }
)
_TRIGGER_KEYS = {
    "cmd": TriggerKind.COMMAND,
    "ft": TriggerKind.FILETYPE,
    "event": TriggerKind.EVENT,
}


@dataclass(frozen=True)
class ManifestOptions:
    root: str = ""
    lockfile: str = ""
    concurrency: int | None = None


@dataclass
class Manifest:
    specs: list[ExtensionSpec]
    disabled: list[str] = field(default_factory=list)
    options: ManifestOptions = field(default_factory=ManifestOptions)
    origin: str = "<embedded>"

    def __iter__(self) -> Iterator[ExtensionSpec]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def __contains__(self, name: object) -> bool:
        return any(spec.name == name for spec in self.specs)

    def names(self) -> list[str]:
        return [spec.name for spec in self.specs]

    def get(self, name: str) -> ExtensionSpec:
        for spec in self.specs:
            if spec.name == name:
                return spec
        raise KeyError(name)


def expand_source(value: str) -> str:
    """Expand an ``owner/repo`` shorthand into a clone URL, leave everything else alone."""
    value = value.strip()
    if _SHORTHAND_PATTERN.match(value) and not Path(value).expanduser().exists():
        return GITHUB_URL_FORMAT.format(value)
    return value


def derive_name(uri: str) -> str:
    stripped = uri.rstrip("/")
    if stripped.startswith("file://"):
        stripped = stripped[len("file://") :]
    tail = re.split(r"[/:\\]", stripped)[-1]
    for suffix in (".git", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar", ".zip"):
        if tail.endswith(suffix):
            tail = tail[: -len(suffix)]
            break
    return tail


def _validate_name(name: str, origin: str) -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise ManifestError(f"{origin}: invalid extension name {name!r}")
    return name


def _as_string_tuple(value: Any, key: str, origin: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if not isinstance(item, str) or not item.strip():
                raise ManifestError(f"{origin}: '{key}' entries must be non-empty strings")
            items.append(item.strip())
        return tuple(items)
    raise ManifestError(f"{origin}: '{key}' must be a string or a list of strings")


def _parse_keys(value: Any, origin: str) -> list[Trigger]:
    if value is None:
        return []
    entries = value if isinstance(value, (list, tuple)) else [value]
    triggers: list[Trigger] = []
    for entry in entries:
        if isinstance(entry, str) and entry.strip():
            triggers.append(Trigger(TriggerKind.KEY, entry.strip(), "n"))
        elif isinstance(entry, Mapping):
            lhs = entry.get("lhs", entry.get("1", entry.get(1)))
            if not isinstance(lhs, str) or not lhs.strip():
                raise ManifestError(f"{origin}: key trigger is missing 'lhs'")
            modes = entry.get("mode", "n")
            for mode in _as_string_tuple(modes, "mode", origin) or ("n",):
                triggers.append(Trigger(TriggerKind.KEY, lhs.strip(), mode))
        else:
            raise ManifestError(f"{origin}: invalid key trigger {entry!r}")
    return triggers


def _parse_source(entry: Mapping[str, Any], origin: str) -> SourceLocator:
    raw: Any = None
    chosen = ""
    for key in ("dir", "url", "source", "1"):
        if entry.get(key):
            raw, chosen = entry[key], key
            break
    if not isinstance(raw, str) or not raw.strip():
        raise ManifestError(f"{origin}: extension has no source ('url', 'dir' or shorthand)")
    uri = raw.strip() if chosen == "dir" else expand_source(raw)

    refs = {}
    for key in ("branch", "tag", "commit"):
        ref = entry.get(key, "")
        if not isinstance(ref, str):
            raise ManifestError(f"{origin}: '{key}' must be a string")
        refs[key] = ref.strip()
    if refs["branch"] and refs["tag"]:
        raise ManifestError(f"{origin}: 'branch' and 'tag' are mutually exclusive")

    source = SourceLocator(uri=uri, **refs)
    if source.kind is not SourceKind.GIT and source.requested_ref:
        raise ManifestError(
            f"{origin}: branch/tag/commit only apply to git sources, got {uri!r}"
        )
    return source


class _SpecCollector(object):
    """Accumulates specs in declaration order, hoisting inline dependencies."""

    def __init__(self) -> None:
        self.specs: dict[str, ExtensionSpec] = {}
        self.disabled: list[str] = []
        self._top_level: set[str] = set()

    def add_top_level(self, entry: Any, index: int) -> None:
        origin = f"extension #{index + 1}"
        spec = self.parse(entry, origin)
        if spec.name in self._top_level or spec.name in self.disabled:
            raise ManifestError(f"{origin}: duplicate extension name {spec.name!r}")
        existing = self.specs.get(spec.name)
        if existing is not None:
            # declared earlier as an inline dependency
            if existing.source != spec.source:
                raise ManifestError(
                    f"{origin}: {spec.name!r} declared with conflicting sources "
                    f"{existing.source.uri!r} and {spec.source.uri!r}"
                )
        self._top_level.add(spec.name)
        if not spec.enabled:
            self.specs.pop(spec.name, None)
            self.disabled.append(spec.name)
            logger.info(f"Extension {spec.name} is disabled")
            return
        self.specs[spec.name] = spec

    def parse(self, entry: Any, origin: str) -> ExtensionSpec:
        if isinstance(entry, str):
            entry = {"1": entry}
        if not isinstance(entry, Mapping):
            raise ManifestError(f"{origin}: expected a string or a mapping, got {entry!r}")
        # YAML reads a positional `1:` key as an int
        entry = {str(key): value for key, value in entry.items()}

        unknown = sorted(key for key in entry if key not in _KNOWN_KEYS)
        if unknown:
            raise ManifestError(f"{origin}: unknown keys {', '.join(unknown)}")

        source = _parse_source(entry, origin)
        name = _validate_name(entry.get("name") or derive_name(source.uri), origin)
        origin = f"{origin} ({name})"

        triggers: list[Trigger] = []
        for key, kind in _TRIGGER_KEYS.items():
            triggers.extend(
                Trigger(kind, value) for value in _as_string_tuple(entry.get(key), key, origin)
            )
        triggers.extend(_parse_keys(entry.get("keys"), origin))

        dependencies = self._parse_dependencies(entry.get("dependencies"), origin)

        config = entry.get("config", entry.get("opts", {}))
        if config is None:
            config = {}
        if not isinstance(config, Mapping):
            raise ManifestError(f"{origin}: 'config' must be a mapping")

        for key in ("lazy", "enabled"):
            if key in entry and not isinstance(entry[key], bool):
                raise ManifestError(f"{origin}: '{key}' must be a boolean")
        for key in ("build", "main"):
            if key in entry and not isinstance(entry[key], str):
                raise ManifestError(f"{origin}: '{key}' must be a string")

        return ExtensionSpec(
            name=name,
            source=source,
            triggers=tuple(dict.fromkeys(triggers)),
            dependencies=dependencies,
            lazy=bool(entry.get("lazy", False)),
            build=str(entry.get("build", "")).strip(),
            config=dict(config),
            main=str(entry.get("main", "")).strip(),
            enabled=bool(entry.get("enabled", True)),
        )

    def _parse_dependencies(self, value: Any, origin: str) -> tuple[str, ...]:
        if value is None:
            return ()
        entries = value if isinstance(value, (list, tuple)) else [value]
        names: list[str] = []
        for dependency in entries:
            if isinstance(dependency, str) and _NAME_PATTERN.match(dependency.strip()):
                # a bare name refers to another spec, resolved later
                names.append(dependency.strip())
                continue
            spec = self.parse(dependency, f"{origin} dependency")
            existing = self.specs.get(spec.name)
            if existing is None:
                self.specs[spec.name] = spec
            elif existing.source != spec.source:
                raise ManifestError(
                    f"{origin}: dependency {spec.name!r} conflicts with the declared "
                    f"source {existing.source.uri!r}"
                )
            names.append(spec.name)
        return tuple(dict.fromkeys(names))


def _parse_options(value: Any) -> ManifestOptions:
    if value is None:
        return ManifestOptions()
    if not isinstance(value, Mapping):
        raise ManifestError("'options' must be a mapping")
    concurrency = value.get("concurrency")
    if concurrency is not None and (
        isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1
    ):
        raise ManifestError("'options.concurrency' must be a positive integer")
    return ManifestOptions(
        root=str(value.get("root", "") or ""),
        lockfile=str(value.get("lockfile", "") or ""),
        concurrency=concurrency,
    )


def parse_manifest(data: Any, origin: str = "<embedded>") -> Manifest:
    """Build a manifest from already-decoded data (a list or an object with 'extensions')."""
    options = ManifestOptions()
    if isinstance(data, Mapping):
        options = _parse_options(data.get("options"))
        data = data.get("extensions", [])
    if not isinstance(data, (list, tuple)):
        raise ManifestError(f"{origin}: 'extensions' must be a list")

    collector = _SpecCollector()
    for index, entry in enumerate(data):
        collector.add_top_level(entry, index)

    manifest = Manifest(
        specs=list(collector.specs.values()),
        disabled=collector.disabled,
        options=options,
        origin=origin,
    )
    logger.debug(f"Loaded {len(manifest)} extension(s) from {origin}")
    return manifest


def load_manifest(path: Path) -> Manifest:
    """Read and parse a YAML manifest file."""
    if not path.is_file():
        raise ManifestError(f"Manifest not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ManifestError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        data = []
    return parse_manifest(data, origin=str(path))
