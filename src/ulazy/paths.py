from __future__ import annotations

import os
import platform
from pathlib import Path

from ulazy.internal_config import (
    DEFAULT_FETCH_CONCURRENCY,
    LOCKFILE_NAME,
    MANIFEST_NAME,
)


def resolve_data_root() -> Path:
    """Resolve the directory that holds the extension store."""
    explicit_root = os.environ.get("ULAZY_ROOT", "").strip()
    if explicit_root:
        return Path(explicit_root).expanduser().resolve()

    xdg_data_home = os.environ.get("XDG_DATA_HOME", "").strip()
    if xdg_data_home:
        return Path(xdg_data_home).expanduser().joinpath("ulazy").resolve()

    home = Path.home()
    if platform.system().lower() == "windows":
        local_app_data = os.environ.get("LOCALAPPDATA", "").strip()
        if local_app_data:
            return Path(local_app_data).joinpath("ulazy").resolve()
        return home.joinpath("AppData", "Local", "ulazy").resolve()
    return home.joinpath(".local", "share", "ulazy").resolve()


def resolve_config_path(explicit: str = "") -> Path:
    """Resolve the manifest file, preferring an explicit argument over the environment."""
    candidate = explicit.strip() or os.environ.get("ULAZY_CONFIG", "").strip()
    if candidate:
        path = Path(os.path.expandvars(candidate)).expanduser()
        return path if path.is_absolute() else Path.cwd().joinpath(path).absolute()

    local_manifest = Path.cwd().joinpath(MANIFEST_NAME)
    if local_manifest.is_file():
        return local_manifest.absolute()

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", "").strip()
    config_home = (
        Path(xdg_config_home).expanduser()
        if xdg_config_home
        else Path.home().joinpath(".config")
    )
    return config_home.joinpath("ulazy", MANIFEST_NAME).absolute()


def default_lockfile_path(config_path: Path) -> Path:
    """The lockfile lives next to the manifest so both can be versioned together."""
    return config_path.with_name(LOCKFILE_NAME)


def resolve_concurrency(
    explicit: int | None = None, configured: int | None = None
) -> int:
    """Pick the fetch worker count: explicit value, environment, manifest option, default."""
    if explicit is not None:
        if explicit < 1:
            raise ValueError(f"Concurrency must be at least 1, got {explicit}")
        return explicit

    from_env = os.environ.get("ULAZY_CONCURRENCY", "").strip()
    if from_env:
        try:
            value = int(from_env)
        except ValueError as exc:
            raise ValueError(f"Invalid ULAZY_CONCURRENCY: {from_env!r}") from exc
        if value < 1:
            raise ValueError(f"Invalid ULAZY_CONCURRENCY: {from_env!r}")
        return value

    if configured is not None and configured >= 1:
        return configured
    return DEFAULT_FETCH_CONCURRENCY
