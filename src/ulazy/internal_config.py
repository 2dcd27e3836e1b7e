from __future__ import annotations

import platform
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version


def _get_package_version(name: str) -> str:
    """Return the installed version of *name*, or ``"0"`` if not found."""
    try:
        return _pkg_version(name)
    except PackageNotFoundError:
        return "0"


ULAZY_VERSION = _get_package_version("ulazy")

DEFAULT_USER_AGENT = (
    f"ulazy/{ULAZY_VERSION} ({platform.system()}; {platform.machine()}; compatible)"
)

# one automatic retry after a transient network failure
FETCH_RETRIES = 1
DEFAULT_FETCH_CONCURRENCY = 8

HTTP_STREAM_CONNECT_TIMEOUT_SECONDS = 10
HTTP_STREAM_READ_TIMEOUT_SECONDS = 120
HTTP_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

GIT_CLONE_FILTER = "blob:none"
GITHUB_URL_FORMAT = "https://github.com/{}.git"
GIT_TRANSIENT_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection reset",
    "connection refused",
    "operation timed out",
    "early eof",
    "the remote end hung up unexpectedly",
    "unable to access",
    "rpc failed",
)

LOCKFILE_NAME = "ulazy-lock.json"
MANIFEST_NAME = "extensions.yaml"
INSTALL_METADATA_NAME = "install.json"
STORE_OBJECTS_DIR = ".objects"
STORE_STAGING_DIR = ".staging"
