from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ulazy.exceptions import ExtensionNotFoundError
from ulazy.models import BuildStatus
from ulazy.store import Store


def _tree(root: Path, content: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    root.joinpath("plugin.py").write_text(content, encoding="utf-8")
    return root


def test_put_get_and_info(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")
    source = _tree(tmp_path / "src", "VALUE = 1\n")

    installed = store.put("ext", source, ref="a" * 40, source_uri="https://x/ext.git")

    assert store.has("ext") is True
    tree = store.get("ext")
    assert tree.joinpath("plugin.py").read_text(encoding="utf-8") == "VALUE = 1\n"
    assert installed.ref == "a" * 40
    assert installed.source_uri == "https://x/ext.git"
    assert installed.build_status is BuildStatus.PENDING
    assert source.is_dir()
    assert list(store.installed()) == ["ext"]


def test_missing_extension_raises(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")

    assert store.has("nope") is False
    with pytest.raises(ExtensionNotFoundError):
        store.get("nope")
    with pytest.raises(ExtensionNotFoundError):
        store.info("nope")
    with pytest.raises(ExtensionNotFoundError):
        store.remove("nope")


def test_put_keeps_superseded_object_until_gc(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")
    store.put("ext", _tree(tmp_path / "v1", "VALUE = 1\n"), ref="1" * 40)
    old_tree = store.get("ext")

    store.put("ext", _tree(tmp_path / "v2", "VALUE = 2\n"), ref="2" * 40, move=True)

    assert store.info("ext").ref == "2" * 40
    assert store.get("ext").joinpath("plugin.py").read_text(encoding="utf-8") == (
        "VALUE = 2\n"
    )
    assert not (tmp_path / "v2").exists()
    # a tree handed out earlier stays readable
    assert old_tree.joinpath("plugin.py").read_text(encoding="utf-8") == "VALUE = 1\n"

    assert [path.name for path in store.collect_garbage()] == [old_tree.parent.name]
    assert not old_tree.exists()
    assert len(list(store.objects_dir.iterdir())) == 1


def test_readers_never_see_a_partial_tree(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")
    store.put("ext", _tree(tmp_path / "v0", "VALUE = 0\n"), ref="0" * 40)
    seen: set[str] = set()
    stop = threading.Event()

    def _reader() -> None:
        while not stop.is_set():
            seen.add(store.get("ext").joinpath("plugin.py").read_text(encoding="utf-8"))

    reader = threading.Thread(target=_reader)
    reader.start()
    try:
        for version in range(1, 20):
            source = _tree(tmp_path / f"v{version}", f"VALUE = {version}\n")
            store.put("ext", source, ref=f"{version:040d}", move=True)
    finally:
        stop.set()
        reader.join()

    assert seen
    assert all(content.startswith("VALUE = ") and content.endswith("\n") for content in seen)
    assert store.info("ext").ref == f"{19:040d}"


def test_failed_put_keeps_previous_install(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = Store(tmp_path / "store")
    store.put("ext", _tree(tmp_path / "v1", "VALUE = 1\n"), ref="1" * 40)

    def _fail_symlink(*_args: object, **_kwargs: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("ulazy.store.os.symlink", _fail_symlink)
    with pytest.raises(OSError, match="disk full"):
        store.put("ext", _tree(tmp_path / "v2", "VALUE = 2\n"), ref="2" * 40)

    assert store.info("ext").ref == "1" * 40
    assert len(list(store.objects_dir.iterdir())) == 1


def test_set_build_status(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")
    store.put("ext", _tree(tmp_path / "src", ""), ref="1" * 40)

    info = store.set_build_status("ext", BuildStatus.FAILED, "make: not found")

    assert info.build_status is BuildStatus.FAILED
    assert info.build_message == "make: not found"
    assert store.info("ext").ref == "1" * 40


def test_clean_removes_unwanted_extensions(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")
    for name in ("keep", "drop"):
        store.put(name, _tree(tmp_path / name, ""), ref="1" * 40)

    assert store.clean(["keep"]) == ["drop"]
    assert list(store.installed()) == ["keep"]
    assert len(list(store.objects_dir.iterdir())) == 1


def test_collect_garbage_removes_leftovers(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")
    store.put("ext", _tree(tmp_path / "src", ""), ref="1" * 40)
    store.objects_dir.joinpath("orphan-123").mkdir()
    store.staging_root.joinpath("ext-abc").mkdir()
    store.root.joinpath(".ext.dead.link").symlink_to(".objects/orphan-123")

    removed = store.collect_garbage()

    assert {path.name for path in removed} == {"orphan-123", "ext-abc"}
    assert not store.root.joinpath(".ext.dead.link").is_symlink()
    assert store.has("ext")


def test_staging_directory_is_removed(tmp_path: Path) -> None:
    store = Store(tmp_path / "store")

    with store.staging("ext") as work_dir:
        work_dir.joinpath("file").write_text("x", encoding="utf-8")
        assert work_dir.parent == store.staging_root

    assert not work_dir.exists()
