"""
Fetch transports.

Transports are synchronous and run in worker threads. They only move bytes;
integrity checks and caching live in ``SourceCache`` and ``SourceFetcher``.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Final, Protocol
from urllib.parse import unquote, urlsplit

import requests

from bundle_orchestrator.domain.errors import FetchError

_CHUNK_BYTES: Final[int] = 1024 * 1024
_USER_AGENT: Final[str] = "bundle-orchestrator"


class ArchiveTransport(Protocol):
    def download(self, url: str, destination: Path, *, timeout_seconds: float) -> None: ...


class GitCheckoutTransport(Protocol):
    def checkout(
        self,
        url: str,
        commit: str,
        destination: Path,
        *,
        timeout_seconds: float,
    ) -> str: ...


class HttpArchiveTransport:
    """Stream archives over HTTP(S) with ``requests``; ``file://`` URLs are copied."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session

    def download(self, url: str, destination: Path, *, timeout_seconds: float) -> None:
        parsed = urlsplit(url)
        if parsed.scheme == "file":
            self._copy_local(unquote(parsed.path), url, destination)
            return
        if parsed.scheme not in ("http", "https"):
            raise FetchError(f"unsupported URL scheme {parsed.scheme!r}", url=url)

        session = self._session or requests.Session()
        try:
            with session.get(
                url,
                stream=True,
                timeout=timeout_seconds,
                headers={"User-Agent": _USER_AGENT},
            ) as response:
                response.raise_for_status()
                with destination.open("wb") as sink:
                    for chunk in response.iter_content(chunk_size=_CHUNK_BYTES):
                        if chunk:
                            sink.write(chunk)
        except requests.RequestException as exc:
            raise FetchError(str(exc), url=url) from exc
        finally:
            if self._session is None:
                session.close()

    @staticmethod
    def _copy_local(path: str, url: str, destination: Path) -> None:
        try:
            shutil.copyfile(path, destination)
        except OSError as exc:
            raise FetchError(str(exc), url=url) from exc


class GitTransport:
    """Check out one pinned commit with the ``git`` executable."""

    def __init__(self, git_binary: str = "git") -> None:
        self._git = git_binary

    def checkout(
        self,
        url: str,
        commit: str,
        destination: Path,
        *,
        timeout_seconds: float,
    ) -> str:
        destination.mkdir(parents=True, exist_ok=True)
        self._run(["init", "--quiet"], destination, url, timeout_seconds)
        self._run(["remote", "add", "origin", url], destination, url, timeout_seconds)
        try:
            self._run(
                ["fetch", "--quiet", "--depth", "1", "origin", commit],
                destination,
                url,
                timeout_seconds,
            )
            target = "FETCH_HEAD"
        except FetchError:
            # Servers that refuse fetching by object id still serve full history.
            self._run(["fetch", "--quiet", "--tags", "origin"], destination, url, timeout_seconds)
            target = commit
        self._run(["checkout", "--quiet", "--detach", target], destination, url, timeout_seconds)
        self._run(
            ["submodule", "update", "--init", "--recursive", "--quiet"],
            destination,
            url,
            timeout_seconds,
        )
        return self._run(["rev-parse", "HEAD"], destination, url, timeout_seconds).strip()

    def _run(self, args: Sequence[str], cwd: Path, url: str, timeout_seconds: float) -> str:
        command = [self._git, *args]
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                env={"GIT_TERMINAL_PROMPT": "0", "PATH": os.environ.get("PATH", "/usr/bin:/bin")},
            )
        except FileNotFoundError as exc:
            raise FetchError(f"git executable not found: {self._git}", url=url) from exc
        except subprocess.TimeoutExpired as exc:
            raise FetchError(f"git {args[0]} timed out after {timeout_seconds}s", url=url) from exc
        if completed.returncode != 0:
            detail = completed.stderr.strip() or completed.stdout.strip()
            raise FetchError(f"git {args[0]} failed: {detail}", url=url)
        return completed.stdout


__all__ = [
    "ArchiveTransport",
    "GitCheckoutTransport",
    "GitTransport",
    "HttpArchiveTransport",
]
