from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter

from ulazy.exceptions import FetchError
from ulazy.install_engine import (
    RunCommand,
    copy_local_tree,
    extract_archive,
    git_clone,
    git_ls_remote,
    sha256_file,
    stream_download_to_target,
    tree_digest,
)
from ulazy.internal_config import DEFAULT_FETCH_CONCURRENCY, DEFAULT_USER_AGENT
from ulazy.models import SourceKind, SourceLocator, is_commit_ref

logger: logging.Logger = logging.getLogger(__name__)


class SourceClient(object):
    """Talk to extension sources: git remotes, archive URLs and local directories."""

    session: requests.Session
    run_command: RunCommand

    def __init__(
        self,
        run_command: RunCommand = subprocess.run,
        session: requests.Session | None = None,
        pool_size: int = DEFAULT_FETCH_CONCURRENCY,
    ) -> None:
        self.run_command = run_command
        if session is None:
            # retries are owned by the fetcher, the adapter only sizes the pool
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            session = requests.Session()
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    def close(self) -> None:
        self.session.close()

    def remote_ref(self, source: SourceLocator) -> str:
        """Return the ref ``source`` currently points at, or ``""`` when it can
        only be known by downloading (archives)."""
        if source.kind is SourceKind.GIT:
            if source.commit:
                return source.commit
            return git_ls_remote(
                uri=source.uri,
                ref=source.tag or source.branch,
                run_command=self.run_command,
            )
        if source.kind is SourceKind.LOCAL:
            path = source.local_path
            if not path.is_dir():
                raise FetchError(f"Local extension directory not found: {path}")
            return tree_digest(path)
        return ""

    def checkout(self, source: SourceLocator, ref: str, work_dir: Path) -> tuple[Path, str]:
        """Materialize ``source`` at ``ref`` below ``work_dir``.

        Returns the extension tree and the ref that was actually retrieved.
        """
        tree_dir = work_dir.joinpath("tree")
        if source.kind is SourceKind.GIT:
            wanted = ref or source.commit or source.tag
            logger.info(f"Cloning {source.uri}{f' at {wanted}' if wanted else ''}")
            resolved = git_clone(
                uri=source.uri,
                target_dir=tree_dir,
                branch="" if wanted else source.branch,
                ref=wanted,
                run_command=self.run_command,
            )
            if ref and is_commit_ref(ref) and not resolved.startswith(ref):
                raise FetchError(f"Checked out {resolved} instead of {ref}")
            return tree_dir, resolved

        if source.kind is SourceKind.LOCAL:
            logger.info(f"Copying {source.local_path}")
            return tree_dir, copy_local_tree(source.local_path, tree_dir)

        logger.info(f"Downloading {source.uri}")
        archive_path = work_dir.joinpath(source.uri.rstrip("/").rsplit("/", 1)[-1])
        stream_download_to_target(
            session=self.session,
            url=source.uri,
            target_path=archive_path,
            headers={"User-Agent": DEFAULT_USER_AGENT},
            temp_prefix="ulazy-download.",
        )
        digest = f"sha256:{sha256_file(archive_path)}"
        if ref and ref != digest:
            raise FetchError(
                f"Archive digest {digest} does not match locked ref {ref}"
            )
        root = extract_archive(archive_path, work_dir.joinpath("unpacked"))
        root.rename(tree_dir)
        return tree_dir, digest
