"""
Source fetching and workspace materialization.

``SourceFetcher.fetch`` resolves one descriptor to a verified path in the cache
(or, for ``dir`` sources, the local directory itself). Cache hits never touch
the network policy or a transport. Concurrent fetches of one cache key share a
single in-flight download.
"""

from __future__ import annotations

import asyncio
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from bundle_orchestrator.domain.errors import FetchError, IntegrityMismatch
from bundle_orchestrator.domain.models import (
    ArchiveSource,
    GitSource,
    LocalSource,
    Module,
    SourceDescriptor,
)
from bundle_orchestrator.sandbox.network_policy import (
    NetworkPolicy,
    NetworkPolicyMode,
    NetworkPolicyViolationError,
    source_host,
)
from bundle_orchestrator.sources.extract import UnsupportedArchiveError, extract_archive
from bundle_orchestrator.sources.transports import (
    ArchiveTransport,
    GitCheckoutTransport,
    GitTransport,
    HttpArchiveTransport,
)
from bundle_orchestrator.utils.concurrency import KeyedCoalescer
from bundle_orchestrator.utils.fs import copy_tree

if TYPE_CHECKING:
    from bundle_orchestrator.sandbox.workspace import BuildWorkspace
    from bundle_orchestrator.sources.cache import SourceCache

DEFAULT_FETCH_TIMEOUT_SECONDS = 300.0
# State directories that must never be copied into a workspace from an in-tree source.
LOCAL_SOURCE_EXCLUDES = (".bundle", ".flatpak-builder", ".git")


@dataclass(slots=True)
class FetchStats:
    cache_hits: int = 0
    cache_misses: int = 0
    network_requests: int = 0
    local_copies: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "network_requests": self.network_requests,
            "local_copies": self.local_copies,
        }


class SourceFetcher:
    def __init__(
        self,
        cache: SourceCache,
        *,
        network_policy: NetworkPolicy | None = None,
        archive_transport: ArchiveTransport | None = None,
        git_transport: GitCheckoutTransport | None = None,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._cache = cache
        self._policy = network_policy or NetworkPolicy(mode=NetworkPolicyMode.DENY)
        self._archives = archive_transport or HttpArchiveTransport()
        self._git = git_transport or GitTransport()
        self._timeout_seconds = timeout_seconds
        self._inflight: KeyedCoalescer[Path] = KeyedCoalescer()
        self.stats = FetchStats()

    @property
    def cache(self) -> SourceCache:
        return self._cache

    async def fetch(self, source: SourceDescriptor, *, module: str) -> Path:
        """Return a verified local path for ``source``.

        Raises ``FetchError`` or ``IntegrityMismatch`` scoped to ``module``.
        """

        if isinstance(source, LocalSource):
            path = Path(source.path)
            if not path.is_dir():
                raise FetchError("local directory does not exist", url=source.path, module=module)
            return path

        cached = self._cached_path(source)
        if cached is not None:
            self.stats.cache_hits += 1
            return cached

        try:
            return await self._inflight.run(
                source.cache_key,
                lambda: self._fetch_uncached(source, module),
            )
        except (FetchError, IntegrityMismatch) as exc:
            if exc.module != module:
                raise exc.for_module(module) from exc
            raise

    async def materialize(self, module: Module, workspace: BuildWorkspace) -> list[Path]:
        """Fetch every source of ``module`` and lay it out under ``workspace.source_dir``."""

        placed: list[Path] = []
        for source in module.sources:
            origin = await self.fetch(source, module=module.name)
            target = workspace.source_dir
            if source.dest is not None:
                target = target.joinpath(*Path(source.dest).parts)
            await asyncio.to_thread(self._place, source, origin, target, module.name)
            placed.append(target)
        return placed

    async def _fetch_uncached(self, source: ArchiveSource | GitSource, module: str) -> Path:
        # Another coalesced caller may have published the entry while this one waited.
        cached = self._cached_path(source)
        if cached is not None:
            self.stats.cache_hits += 1
            return cached

        self.stats.cache_misses += 1
        self._check_network(source.url, module)
        self.stats.network_requests += 1
        return await asyncio.to_thread(self._download, source, module)

    def _cached_path(self, source: ArchiveSource | GitSource) -> Path | None:
        if isinstance(source, ArchiveSource):
            if self._cache.has_archive(source.sha256):
                return self._cache.archive_path(source.sha256)
        elif self._cache.has_git(source.commit):
            return self._cache.git_path(source.commit)
        return None

    def _download(self, source: ArchiveSource | GitSource, module: str) -> Path:
        try:
            if isinstance(source, ArchiveSource):
                return self._cache.store_archive(
                    source.sha256,
                    source.url,
                    lambda path: self._archives.download(
                        source.url, path, timeout_seconds=self._timeout_seconds
                    ),
                )
            return self._cache.store_git(
                source.commit,
                source.url,
                lambda path: self._git.checkout(
                    source.url, source.commit, path, timeout_seconds=self._timeout_seconds
                ),
            )
        except (FetchError, IntegrityMismatch) as exc:
            raise exc.for_module(module) from exc
        except OSError as exc:
            raise FetchError(str(exc), url=source.url, module=module) from exc

    def _check_network(self, url: str, module: str) -> None:
        if source_host(url) is None:
            return
        try:
            self._policy.enforce(url, context={"module": module})
        except NetworkPolicyViolationError as exc:
            raise FetchError(exc.decision.reason, url=url, module=module) from exc

    def _place(self, source: SourceDescriptor, origin: Path, target: Path, module: str) -> None:
        if isinstance(source, ArchiveSource):
            try:
                extract_archive(origin, target, strip_components=source.strip_components)
            except (
                UnsupportedArchiveError,
                tarfile.TarError,
                zipfile.BadZipFile,
                ValueError,
                OSError,
            ) as exc:
                raise FetchError(str(exc), url=source.url, module=module) from exc
            return
        target.mkdir(parents=True, exist_ok=True)
        if isinstance(source, LocalSource):
            self.stats.local_copies += 1
            copy_tree(origin, target, exclude=LOCAL_SOURCE_EXCLUDES)
            return
        copy_tree(origin, target)
        stray_git = target / ".git"
        if isinstance(source, GitSource) and stray_git.is_dir():
            shutil.rmtree(stray_git)


__all__ = ["DEFAULT_FETCH_TIMEOUT_SECONDS", "FetchStats", "SourceFetcher"]
