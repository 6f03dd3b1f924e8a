"""Explicit per-run build context.

Everything a run touches hangs off one ``BuildContext``; nothing is stored in
module globals, so several builds can share a process.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from bundle_orchestrator.constants import CACHE_DIR, IMAGE_DIR, LOG_DIR, WORKSPACES_DIR

if TYPE_CHECKING:
    from bundle_orchestrator.artifacts.aggregator import ArtifactImage
    from bundle_orchestrator.builders.base import AdapterRegistry
    from bundle_orchestrator.domain.models import Manifest
    from bundle_orchestrator.planning.module_graph import ModuleGraph
    from bundle_orchestrator.sandbox.network_policy import NetworkPolicy
    from bundle_orchestrator.sandbox.policy_resolver import ResolvedPolicy
    from bundle_orchestrator.sandbox.runner import CommandRunner
    from bundle_orchestrator.sandbox.workspace import WorkspaceManager
    from bundle_orchestrator.sources.cache import SourceCache
    from bundle_orchestrator.sources.fetcher import SourceFetcher
    from bundle_orchestrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class BuildPaths:
    workspace_root: Path
    cache_dir: Path
    image_dir: Path
    log_dir: Path

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | None = None) -> BuildPaths:
        """Resolve the ``[paths]`` and ``observability.log_dir`` settings."""

        base = base_dir if base_dir is not None else Path.cwd()
        paths = config.get("paths", {})
        observability = config.get("observability", {})

        def resolve(value: object, default: str) -> Path:
            path = Path(value if isinstance(value, str) else default).expanduser()
            return path if path.is_absolute() else (base / path).resolve(strict=False)

        return cls(
            workspace_root=resolve(paths.get("workspace_root"), str(WORKSPACES_DIR)),
            cache_dir=resolve(paths.get("cache_dir"), str(CACHE_DIR)),
            image_dir=resolve(paths.get("image_dir"), str(IMAGE_DIR)),
            log_dir=resolve(observability.get("log_dir"), str(LOG_DIR)),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "workspace_root": str(self.workspace_root),
            "cache_dir": str(self.cache_dir),
            "image_dir": str(self.image_dir),
            "log_dir": str(self.log_dir),
        }


@dataclass(slots=True)
class BuildContext:
    run_id: str
    manifest: Manifest
    graph: ModuleGraph
    policy: ResolvedPolicy
    paths: BuildPaths
    network_policy: NetworkPolicy
    fetcher: SourceFetcher
    workspaces: WorkspaceManager
    runner: CommandRunner
    image: ArtifactImage
    adapters: AdapterRegistry
    cancel_token: CancellationToken
    parallelism: int = 1
    config: Mapping[str, Any] = field(default_factory=dict)
    logger: Any = None

    def __post_init__(self) -> None:
        if self.parallelism <= 0:
            raise ValueError("parallelism must be > 0")
        if self.logger is None:
            self.logger = structlog.get_logger(__name__).bind(run_id=self.run_id)

    @property
    def cache(self) -> SourceCache:
        return self.fetcher.cache

    @property
    def prefix(self) -> str:
        return self.manifest.build_options.prefix


__all__ = ["BuildContext", "BuildPaths"]
