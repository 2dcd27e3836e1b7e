"""Filesystem store of installed extensions.

Layout below the store root::

    <name>                -> .objects/<name>-<token>   (symlink, the visible install)
    .objects/<name>-<token>/tree/          extension source tree
    .objects/<name>-<token>/install.json   InstalledExtension metadata
    .staging/                              work areas for in-flight fetches

Publishing a new tree swaps the ``<name>`` symlink with ``os.replace`` so a
reader always sees either the previous or the new install, never a mix.
Superseded objects stay on disk, so a tree handed out by ``get`` remains
readable, until ``collect_garbage`` drops them.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import shutil
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from ulazy.exceptions import ExtensionNotFoundError
from ulazy.internal_config import (
    INSTALL_METADATA_NAME,
    STORE_OBJECTS_DIR,
    STORE_STAGING_DIR,
)
from ulazy.models import BuildStatus, InstalledExtension

logger: logging.Logger = logging.getLogger(__name__)


def _write_json_atomically(path: Path, payload: object) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class Store(object):
    """Directory-per-extension store; its layout is the truth about what is installed."""

    root: Path

    def __init__(self, root: Path) -> None:
        self.root = root
        self.objects_dir = root.joinpath(STORE_OBJECTS_DIR)
        self.staging_root = root.joinpath(STORE_STAGING_DIR)
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.staging_root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock(self, name: str) -> threading.Lock:
        """Per-name lock serializing writes to one extension."""
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _link(self, name: str) -> Path:
        return self.root.joinpath(name)

    def _object_dir(self, name: str) -> Path | None:
        link = self._link(name)
        if not link.is_symlink():
            return None
        target = link.resolve()
        if not target.joinpath("tree").is_dir():
            return None
        return target

    def has(self, name: str) -> bool:
        return self._object_dir(name) is not None

    def get(self, name: str) -> Path:
        """Return the on-disk source tree of ``name``."""
        object_dir = self._object_dir(name)
        if object_dir is None:
            raise ExtensionNotFoundError(f"Extension not installed: {name}")
        return object_dir.joinpath("tree")

    def info(self, name: str) -> InstalledExtension:
        object_dir = self._object_dir(name)
        if object_dir is None:
            raise ExtensionNotFoundError(f"Extension not installed: {name}")
        metadata_path = object_dir.joinpath(INSTALL_METADATA_NAME)
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning(f"Missing or unreadable install metadata for {name}")
            data = {"name": name}
        if not isinstance(data, dict):
            data = {"name": name}
        return InstalledExtension.from_json(data, object_dir.joinpath("tree"))

    def installed(self) -> dict[str, InstalledExtension]:
        result: dict[str, InstalledExtension] = {}
        for entry in sorted(self.root.iterdir()):
            if entry.name.startswith(".") or not entry.is_symlink():
                continue
            if self.has(entry.name):
                result[entry.name] = self.info(entry.name)
        return result

    @contextmanager
    def staging(self, name: str) -> Iterator[Path]:
        """Yield an empty work directory on the store's filesystem, removed afterwards."""
        path = Path(tempfile.mkdtemp(prefix=f"{name}-", dir=self.staging_root))
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def put(
        self,
        name: str,
        source_tree: Path,
        ref: str,
        source_uri: str = "",
        build_status: BuildStatus = BuildStatus.PENDING,
        move: bool = False,
    ) -> InstalledExtension:
        """Publish ``source_tree`` as the installed version of ``name``.

        The tree is moved (``move=True``, must live on the store filesystem) or
        copied into a fresh object directory, then the visible link is swapped.
        """
        object_dir = self.objects_dir.joinpath(f"{name}-{uuid.uuid4().hex[:12]}")
        tree_dir = object_dir.joinpath("tree")
        object_dir.mkdir(parents=True)
        try:
            if move:
                os.replace(source_tree, tree_dir)
            else:
                shutil.copytree(source_tree, tree_dir, symlinks=True)

            installed = InstalledExtension(
                name=name,
                ref=ref,
                path=tree_dir,
                installed_at=datetime.datetime.now(datetime.timezone.utc),
                build_status=build_status,
                source_uri=source_uri,
            )
            _write_json_atomically(
                object_dir.joinpath(INSTALL_METADATA_NAME), installed.to_json()
            )

            tmp_link = self.root.joinpath(f".{name}.{uuid.uuid4().hex[:8]}.link")
            os.symlink(Path(STORE_OBJECTS_DIR, object_dir.name), tmp_link)
            try:
                os.replace(tmp_link, self._link(name))
            except BaseException:
                tmp_link.unlink(missing_ok=True)
                raise
        except BaseException:
            shutil.rmtree(object_dir, ignore_errors=True)
            raise

        logger.debug(f"Stored {name} at {ref}")
        return self.info(name)

    def set_build_status(
        self, name: str, status: BuildStatus, message: str = ""
    ) -> InstalledExtension:
        object_dir = self._object_dir(name)
        if object_dir is None:
            raise ExtensionNotFoundError(f"Extension not installed: {name}")
        current = self.info(name)
        payload = current.to_json()
        payload["build_status"] = status.value
        payload["build_message"] = message
        _write_json_atomically(object_dir.joinpath(INSTALL_METADATA_NAME), payload)
        return self.info(name)

    def remove(self, name: str) -> None:
        """Delete an installed extension."""
        link = self._link(name)
        if not link.is_symlink():
            raise ExtensionNotFoundError(f"Extension not installed: {name}")
        target = link.resolve()
        link.unlink()
        if target.parent == self.objects_dir.resolve():
            shutil.rmtree(target, ignore_errors=True)
        logger.info(f"Removed {name}")

    def clean(self, keep: Iterable[str]) -> list[str]:
        """Remove every installed extension whose name is not in ``keep``."""
        wanted = set(keep)
        removed: list[str] = []
        for name in self.installed():
            if name not in wanted:
                with self.lock(name):
                    self.remove(name)
                removed.append(name)
        return removed

    def collect_garbage(self) -> list[Path]:
        """Drop staging leftovers and objects no link points at.

        Only safe while no fetch is running, e.g. right after start-up.
        """
        referenced = set()
        for entry in self.root.iterdir():
            if entry.name.endswith(".link"):
                entry.unlink(missing_ok=True)
            elif entry.is_symlink():
                referenced.add(entry.resolve())

        removed: list[Path] = []
        for leftover in self.staging_root.iterdir():
            shutil.rmtree(leftover, ignore_errors=True)
            removed.append(leftover)
        for object_dir in self.objects_dir.iterdir():
            if object_dir.resolve() not in referenced:
                shutil.rmtree(object_dir, ignore_errors=True)
                removed.append(object_dir)
        if removed:
            logger.info(f"Removed {len(removed)} stale store entries")
        return removed
