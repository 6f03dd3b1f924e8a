"""
Content-addressed source cache.

Layout under the cache root:

- ``archives/<sha256>``: verified archive bytes
- ``git/<commit>``: checked-out tree at exactly that commit

Entries are write-once. Writers build into a temporary sibling, verify it, and
publish with a rename, so readers never observe a partial entry.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path

from bundle_orchestrator.domain.errors import IntegrityMismatch
from bundle_orchestrator.utils.fs import publish_directory, staging_directory
from bundle_orchestrator.utils.hashing import sha256_file

ARCHIVES_DIR = "archives"
GIT_DIR = "git"


class SourceCache:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser().resolve(strict=False)

    @property
    def root(self) -> Path:
        return self._root

    def archive_path(self, sha256: str) -> Path:
        return self._root / ARCHIVES_DIR / sha256

    def git_path(self, commit: str) -> Path:
        return self._root / GIT_DIR / commit

    def has_archive(self, sha256: str) -> bool:
        return self.archive_path(sha256).is_file()

    def has_git(self, commit: str) -> bool:
        return self.git_path(commit).is_dir()

    def store_archive(self, sha256: str, url: str, writer: Callable[[Path], None]) -> Path:
        """
        Fill a temp file with ``writer``, verify its digest, and publish it.

        Raises ``IntegrityMismatch`` (leaving the cache untouched) when the bytes
        written do not hash to ``sha256``.
        """

        target = self.archive_path(sha256)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{sha256}.", suffix=".part", dir=target.parent)
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            writer(temp_path)
            actual = sha256_file(temp_path)
            if actual != sha256:
                raise IntegrityMismatch(url=url, expected=sha256, actual=actual)
            os.replace(temp_path, target)
        finally:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
        return target

    def store_git(self, commit: str, url: str, writer: Callable[[Path], str]) -> Path:
        """
        Check out into a staging directory with ``writer`` and publish it.

        ``writer`` returns the commit it checked out; anything other than the pin
        raises ``IntegrityMismatch``.
        """

        target = self.git_path(commit)
        staged = staging_directory(target)
        try:
            head = writer(staged).strip().lower()
            if head != commit:
                raise IntegrityMismatch(url=url, expected=commit, actual=head or "<none>")
            shutil.rmtree(staged / ".git", ignore_errors=True)
            publish_directory(staged, target)
        finally:
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)
        return target

    def entries(self) -> dict[str, list[str]]:
        """Cached keys by kind, sorted."""

        result: dict[str, list[str]] = {}
        for kind in (ARCHIVES_DIR, GIT_DIR):
            directory = self._root / kind
            names = (
                sorted(path.name for path in directory.iterdir() if not path.name.startswith("."))
                if directory.is_dir()
                else []
            )
            result[kind] = names
        return result


__all__ = ["SourceCache"]
