from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ulazy import extension_manager

runner = CliRunner()


@pytest.fixture
def config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("ULAZY_CONCURRENCY", raising=False)
    source = tmp_path / "src" / "hello"
    source.mkdir(parents=True)
    source.joinpath("hello.py").write_text("def setup(config):\n    pass\n", encoding="utf-8")
    path = tmp_path / "extensions.yaml"
    path.write_text(f"extensions:\n  - dir: {source}\n    cmd: Hello\n", encoding="utf-8")
    return path


def _args(command: str, config: Path, *extra: str) -> list[str]:
    return [
        command,
        "--config",
        str(config),
        "--root",
        str(config.parent / "data"),
        *extra,
    ]


def test_version_option() -> None:
    result = runner.invoke(extension_manager.app, ["--version"])

    assert result.exit_code == 0
    assert result.output.startswith("ulazy ")
    assert "User-Agent: ulazy/" in result.output


def test_install_status_and_clean(config: Path) -> None:
    installed = runner.invoke(extension_manager.app, _args("install", config))

    assert installed.exit_code == 0, installed.output
    assert "NAME" in installed.output
    assert "hello" in installed.output
    assert "install: 1 extension(s) ok" in installed.output
    lock = json.loads(config.with_name("ulazy-lock.json").read_text(encoding="utf-8"))
    assert list(lock) == ["hello"]

    status = runner.invoke(extension_manager.app, _args("status", config))
    assert status.exit_code == 0, status.output
    assert "installed" in status.output

    config.write_text("extensions: []\n", encoding="utf-8")
    cleaned = runner.invoke(extension_manager.app, _args("clean", config))
    assert cleaned.exit_code == 0, cleaned.output
    assert "removed" in cleaned.output
    assert json.loads(config.with_name("ulazy-lock.json").read_text(encoding="utf-8")) == {}


def test_update_named_extension(config: Path) -> None:
    runner.invoke(extension_manager.app, _args("install", config))

    result = runner.invoke(
        extension_manager.app, _args("update", config, "hello", "--concurrency", "1")
    )

    assert result.exit_code == 0, result.output
    assert "update: 1 extension(s) ok" in result.output


def test_update_unknown_name_exits_with_usage_error(config: Path) -> None:
    result = runner.invoke(extension_manager.app, _args("update", config, "missing"))

    assert result.exit_code == 2


def test_failed_install_exits_with_one(tmp_path: Path) -> None:
    config = tmp_path / "extensions.yaml"
    config.write_text(
        f"extensions:\n  - dir: {tmp_path / 'nowhere'}\n    name: ghost\n",
        encoding="utf-8",
    )

    result = runner.invoke(extension_manager.app, _args("install", config))

    assert result.exit_code == 1
    assert "1 of 1 failed (ghost)" in result.output


@pytest.mark.parametrize(
    "content",
    [
        "extensions:\n  - {dir: /a, name: a, dependencies: [b]}\n"
        "  - {dir: /b, name: b, dependencies: [a]}\n",
        "extensions: [owner/a, owner/a]\n",
        "extensions: [\n",
    ],
)
def test_manifest_and_resolution_errors_exit_with_two(tmp_path: Path, content: str) -> None:
    config = tmp_path / "extensions.yaml"
    config.write_text(content, encoding="utf-8")

    result = runner.invoke(extension_manager.app, _args("install", config))

    assert result.exit_code == 2
    assert not (tmp_path / "data").exists()


def test_missing_manifest_exits_with_two(tmp_path: Path) -> None:
    result = runner.invoke(
        extension_manager.app, _args("install", tmp_path / "missing.yaml")
    )

    assert result.exit_code == 2


def test_invalid_log_level_is_rejected(config: Path) -> None:
    result = runner.invoke(
        extension_manager.app, _args("status", config, "--log-level", "chatty")
    )

    assert result.exit_code == 2
