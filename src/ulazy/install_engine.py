from __future__ import annotations

import hashlib
import os
import shlex
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol

import requests

from ulazy.exceptions import BuildError, FetchError, TransientFetchError
from ulazy.internal_config import (
    GIT_CLONE_FILTER,
    GIT_TRANSIENT_MARKERS,
    HTTP_STREAM_CONNECT_TIMEOUT_SECONDS,
    HTTP_STREAM_READ_TIMEOUT_SECONDS,
    HTTP_TRANSIENT_STATUS_CODES,
)


class DownloadSession(Protocol):
    def get(
        self,
        url: str,
        *,
        stream: bool,
        headers: dict[str, str],
        timeout: tuple[int, int],
    ) -> requests.Response: ...


RunCommand = Callable[..., subprocess.CompletedProcess[str]]


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 64), b""):
            digest.update(chunk)
    return digest.hexdigest()


def tree_digest(root: Path) -> str:
    """Content digest of a directory tree (relative paths + file bytes)."""
    digest = hashlib.sha256()
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if ".git" in relative.parts or "__pycache__" in relative.parts:
            continue
        digest.update(relative.as_posix().encode("utf-8"))
        if path.is_symlink():
            digest.update(b"->" + os.readlink(path).encode("utf-8"))
        elif path.is_file():
            digest.update(b"\0")
            digest.update(bytes.fromhex(sha256_file(path)))
    return f"sha256:{digest.hexdigest()}"


def run_checked(
    cmd: list[str],
    run_command: RunCommand = subprocess.run,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    process = run_command(
        cmd,
        capture_output=True,
        check=False,
        text=True,
        cwd=str(cwd) if cwd else None,
    )
    if process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            cmd,
            process.stdout,
            process.stderr,
        )
    return process


def _git_error(action: str, exc: subprocess.CalledProcessError) -> FetchError:
    stderr = f"{exc.stderr or ''}".strip()
    message = f"git {action} failed: {stderr or exc}"
    if any(marker in stderr.lower() for marker in GIT_TRANSIENT_MARKERS):
        return TransientFetchError(message)
    return FetchError(message)


def git_clone(
    *,
    uri: str,
    target_dir: Path,
    branch: str = "",
    ref: str = "",
    run_command: RunCommand = subprocess.run,
) -> str:
    """Clone ``uri`` into ``target_dir`` and return the checked out commit.

    ``ref`` (a commit or tag) wins over ``branch``; without either the remote's
    default branch is used.
    """
    cmd = ["git", "clone", f"--filter={GIT_CLONE_FILTER}"]
    if ref:
        cmd.append("--no-checkout")
    elif branch:
        cmd.append(f"--branch={branch}")
    cmd.extend([uri, str(target_dir)])
    try:
        run_checked(cmd, run_command)
        if ref:
            run_checked(
                ["git", "-C", str(target_dir), "checkout", "--quiet", ref],
                run_command,
            )
        head = run_checked(
            ["git", "-C", str(target_dir), "rev-parse", "HEAD"], run_command
        )
    except subprocess.CalledProcessError as exc:
        raise _git_error("clone", exc) from exc
    return f"{head.stdout}".strip()


def git_ls_remote(
    *, uri: str, ref: str = "", run_command: RunCommand = subprocess.run
) -> str:
    """Return the commit ``ref`` (default: HEAD) points at on the remote."""
    pattern = ref or "HEAD"
    try:
        process = run_checked(["git", "ls-remote", uri, pattern], run_command)
    except subprocess.CalledProcessError as exc:
        raise _git_error("ls-remote", exc) from exc

    peeled = ""
    first = ""
    for line in f"{process.stdout}".splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        commit, name = parts
        if name.endswith("^{}"):
            # annotated tags: the peeled entry is the commit itself
            peeled = peeled or commit
        elif not first:
            first = commit
    resolved = peeled or first
    if not resolved:
        raise FetchError(f"Ref {pattern} not found on {uri}")
    return resolved


def stream_download_to_target(
    *,
    session: DownloadSession,
    url: str,
    target_path: Path,
    headers: dict[str, str],
    temp_prefix: str,
    timeout: tuple[int, int] = (
        HTTP_STREAM_CONNECT_TIMEOUT_SECONDS,
        HTTP_STREAM_READ_TIMEOUT_SECONDS,
    ),
) -> Path:
    with tempfile.TemporaryDirectory(
        prefix=temp_prefix, dir=target_path.parent
    ) as tmp_dir:
        file_path = Path(tmp_dir, target_path.name)

        try:
            with open(file_path, "wb") as output:
                response: requests.Response = session.get(
                    url,
                    stream=True,
                    headers=headers,
                    timeout=timeout,
                )
                response.raise_for_status()

                for chunk in response.iter_content(chunk_size=1024 * 8):
                    if chunk:
                        output.write(chunk)
                output.flush()
                os.fsync(output.fileno())
        except requests.HTTPError as exc:
            status = getattr(exc.response, "status_code", None)
            if status in HTTP_TRANSIENT_STATUS_CODES:
                raise TransientFetchError(f"Download of {url} failed: {exc}") from exc
            raise FetchError(f"Download of {url} failed: {exc}") from exc
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientFetchError(f"Download of {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise FetchError(f"Download of {url} failed: {exc}") from exc

        shutil.move(file_path, target_path)
        return target_path


def _safe_member_path(target_dir: Path, member_name: str) -> Path:
    relative = PurePosixPath(member_name)
    if relative.is_absolute() or ".." in relative.parts:
        raise FetchError(f"Archive member escapes extraction directory: {member_name}")
    return target_dir.joinpath(*relative.parts)


def extract_archive(archive_path: Path, target_dir: Path) -> Path:
    """Unpack a zip or tar archive and return the extension root inside it.

    A single top-level directory (as produced by forge tarballs) is unwrapped.
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    try:
        _unpack(archive_path, target_dir)
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, zlib.error) as exc:
        raise FetchError(f"Corrupt archive {archive_path.name}: {exc}") from exc

    entries = [entry for entry in target_dir.iterdir()]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return target_dir


def _unpack(archive_path: Path, target_dir: Path) -> None:
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path, "r") as archive:
            for info in archive.infolist():
                _safe_member_path(target_dir, info.filename)
                mode = (info.external_attr >> 16) & 0o170000
                if mode == 0o120000:
                    raise FetchError(f"Archive contains a symlink: {info.filename}")
            archive.extractall(target_dir)
    elif tarfile.is_tarfile(archive_path):
        with tarfile.open(archive_path, "r:*") as archive:
            members = archive.getmembers()
            for member in members:
                _safe_member_path(target_dir, member.name)
                if not (member.isfile() or member.isdir()):
                    raise FetchError(f"Unsupported archive member: {member.name}")
            if hasattr(tarfile, "data_filter"):
                archive.extractall(target_dir, members=members, filter="data")
            else:
                archive.extractall(target_dir, members=members)
    else:
        raise FetchError(f"Unsupported archive format: {archive_path.name}")


def copy_local_tree(source_dir: Path, target_dir: Path) -> str:
    """Copy a local extension directory and return its content digest."""
    if not source_dir.is_dir():
        raise FetchError(f"Local extension directory not found: {source_dir}")
    shutil.copytree(
        source_dir,
        target_dir,
        symlinks=True,
        ignore=shutil.ignore_patterns(".git", "__pycache__"),
    )
    return tree_digest(target_dir)


def run_build_command(
    *,
    build: str,
    extension_dir: Path,
    run_command: RunCommand = subprocess.run,
) -> None:
    """Run the post-install build step inside the extension's tree."""
    cmd = shlex.split(build)
    if not cmd:
        return
    try:
        run_checked(cmd, run_command, cwd=extension_dir)
    except subprocess.CalledProcessError as exc:
        output = f"{exc.stderr or exc.stdout or ''}".strip()
        raise BuildError(
            f"Build command {build!r} exited with {exc.returncode}: {output}"
        ) from exc
    except OSError as exc:
        raise BuildError(f"Build command {build!r} could not start: {exc}") from exc
