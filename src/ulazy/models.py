from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

_ARCHIVE_SUFFIXES = (".zip", ".tar.gz", ".tgz", ".tar", ".tar.bz2", ".tar.xz")
_COMMIT_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")


class SourceKind(str, Enum):
    GIT = "git"
    ARCHIVE = "archive"
    LOCAL = "local"


class TriggerKind(str, Enum):
    COMMAND = "cmd"
    FILETYPE = "ft"
    KEY = "keys"
    EVENT = "event"


class ActivationState(str, Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class BuildStatus(str, Enum):
    PENDING = "pending"
    OK = "ok"
    FAILED = "failed"


class FetchStatus(str, Enum):
    INSTALLED = "installed"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class PlanAction(str, Enum):
    INSTALL = "install"
    CHECKOUT = "checkout"
    UPDATE = "update"
    KEEP = "keep"


@dataclass(frozen=True)
class SourceLocator:
    uri: str
    branch: str = ""
    tag: str = ""
    commit: str = ""

    @property
    def kind(self) -> SourceKind:
        lowered = self.uri.lower()
        if lowered.startswith("file://") or not _looks_remote(lowered):
            return SourceKind.LOCAL
        if lowered.startswith(("http://", "https://")) and lowered.endswith(
            _ARCHIVE_SUFFIXES
        ):
            return SourceKind.ARCHIVE
        return SourceKind.GIT

    @property
    def requested_ref(self) -> str:
        return self.commit or self.tag or self.branch

    @property
    def local_path(self) -> Path:
        if self.uri.startswith("file://"):
            return Path(self.uri[len("file://") :]).expanduser()
        return Path(self.uri).expanduser()


def _looks_remote(uri: str) -> bool:
    return "://" in uri or uri.startswith("git@")


def is_commit_ref(value: str) -> bool:
    return bool(_COMMIT_PATTERN.match(value))


@dataclass(frozen=True)
class HostEvent:
    """Something the host observed: a command ran, a file opened, a key was pressed."""

    kind: TriggerKind
    value: str
    mode: str = ""

    @classmethod
    def command(cls, name: str) -> HostEvent:
        return cls(TriggerKind.COMMAND, name)

    @classmethod
    def filetype(cls, filetype: str) -> HostEvent:
        return cls(TriggerKind.FILETYPE, filetype)

    @classmethod
    def key(cls, lhs: str, mode: str = "n") -> HostEvent:
        return cls(TriggerKind.KEY, lhs, mode)

    @classmethod
    def named(cls, name: str) -> HostEvent:
        return cls(TriggerKind.EVENT, name)


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind
    value: str
    mode: str = ""

    def matches(self, event: HostEvent) -> bool:
        if event.kind is not self.kind or event.value != self.value:
            return False
        if self.kind is TriggerKind.KEY:
            return (self.mode or "n") == (event.mode or "n")
        return True

    def describe(self) -> str:
        if self.kind is TriggerKind.KEY:
            return f"{self.kind.value}:{self.mode or 'n'}:{self.value}"
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class ExtensionSpec:
    name: str
    source: SourceLocator
    triggers: tuple[Trigger, ...] = ()
    dependencies: tuple[str, ...] = ()
    lazy: bool = False
    build: str = ""
    config: Mapping[str, Any] = field(default_factory=dict, hash=False)
    main: str = ""
    enabled: bool = True

    @property
    def eager(self) -> bool:
        return not self.lazy and not self.triggers

    @property
    def entry_point(self) -> tuple[str, str]:
        """Return ``(module, attribute)`` of the setup entry point."""
        main = self.main or default_main_module(self.name)
        module, _, attribute = main.partition(":")
        return module, attribute or "setup"


def default_main_module(name: str) -> str:
    """Derive an importable module name from an extension name."""
    base = name.lower()
    for suffix in (".git", ".py"):
        if base.endswith(suffix):
            base = base[: -len(suffix)]
    base = re.sub(r"[^0-9a-z_]", "_", base)
    if base and base[0].isdigit():
        base = f"_{base}"
    return base


@dataclass(frozen=True)
class InstalledExtension:
    name: str
    ref: str
    path: Path
    installed_at: datetime.datetime
    build_status: BuildStatus = BuildStatus.PENDING
    source_uri: str = ""
    build_message: str = ""

    def to_json(self) -> dict[str, object]:
        return {
            "name": self.name,
            "ref": self.ref,
            "installed_at": self.installed_at.isoformat(),
            "build_status": self.build_status.value,
            "build_message": self.build_message,
            "source_uri": self.source_uri,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any], path: Path) -> InstalledExtension:
        installed_at = data.get("installed_at", "")
        try:
            timestamp = datetime.datetime.fromisoformat(str(installed_at))
        except ValueError:
            timestamp = datetime.datetime.fromtimestamp(0, tz=datetime.timezone.utc)
        try:
            build_status = BuildStatus(str(data.get("build_status", "pending")))
        except ValueError:
            build_status = BuildStatus.PENDING
        return cls(
            name=str(data.get("name", "")),
            ref=str(data.get("ref", "")),
            path=path,
            installed_at=timestamp,
            build_status=build_status,
            source_uri=str(data.get("source_uri", "")),
            build_message=str(data.get("build_message", "")),
        )


@dataclass(frozen=True)
class PlanItem:
    spec: ExtensionSpec
    action: PlanAction
    target_ref: str = ""
    installed_ref: str = ""


@dataclass(frozen=True)
class FetchResult:
    name: str
    status: FetchStatus
    ref: str = ""
    previous_ref: str = ""
    error: str = ""
    attempts: int = 0

    @property
    def failed(self) -> bool:
        return self.status is FetchStatus.FAILED
