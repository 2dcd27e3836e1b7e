from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ulazy.exceptions import LockfileError

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockEntry:
    ref: str
    branch: str = ""

    def to_json(self) -> dict[str, str]:
        data = {"commit": self.ref}
        if self.branch:
            data["branch"] = self.branch
        return data


class Lockfile(object):
    """Persisted name -> resolved ref mapping that makes installs reproducible.

    Stored as sorted, indented JSON so that changes show up as one-line diffs.
    """

    path: Path
    entries: dict[str, LockEntry]

    def __init__(self, path: Path) -> None:
        self.path = path
        self.entries = {}
        self._dirty = False
        if path.is_file():
            self.load()

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.entries))

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError as exc:
            raise LockfileError(f"Invalid lockfile {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise LockfileError(f"Invalid lockfile {self.path}: expected an object")

        entries: dict[str, LockEntry] = {}
        for name, value in data.items():
            if isinstance(value, str):
                entries[name] = LockEntry(ref=value)
            elif isinstance(value, dict) and isinstance(value.get("commit"), str):
                entries[name] = LockEntry(
                    ref=value["commit"], branch=str(value.get("branch", ""))
                )
            else:
                raise LockfileError(f"Invalid lockfile entry for {name}: {value!r}")
        self.entries = entries
        self._dirty = False

    def get(self, name: str) -> LockEntry | None:
        return self.entries.get(name)

    def set(self, name: str, ref: str, branch: str = "") -> None:
        entry = LockEntry(ref=ref, branch=branch)
        if self.entries.get(name) != entry:
            self.entries[name] = entry
            self._dirty = True

    def remove(self, name: str) -> bool:
        if self.entries.pop(name, None) is None:
            return False
        self._dirty = True
        return True

    def prune(self, keep: set[str]) -> list[str]:
        removed = [name for name in sorted(self.entries) if name not in keep]
        for name in removed:
            self.remove(name)
        return removed

    def render(self) -> str:
        payload = {name: self.entries[name].to_json() for name in sorted(self.entries)}
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    def save(self) -> None:
        """Atomically write the lockfile (temporary file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.render())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self._dirty = False
        logger.debug(f"Wrote {len(self.entries)} lock entries to {self.path}")
