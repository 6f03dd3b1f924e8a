"""Build controller: wires config, manifest and components into one run."""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from bundle_orchestrator.artifacts.aggregator import ArtifactImage
from bundle_orchestrator.builders.adapters import default_registry
from bundle_orchestrator.config.schema import assert_valid_config, default_config
from bundle_orchestrator.control_plane.context import BuildContext, BuildPaths
from bundle_orchestrator.control_plane.scheduler import BuildScheduler
from bundle_orchestrator.domain.models import FailureMode, ImplicitOrder, TestFailurePolicy
from bundle_orchestrator.manifest.parser import load_manifest
from bundle_orchestrator.planning.module_graph import build_module_graph
from bundle_orchestrator.sandbox.network_policy import NetworkPolicy
from bundle_orchestrator.sandbox.policy_resolver import resolve_policy
from bundle_orchestrator.sandbox.resources import resolve_parallelism
from bundle_orchestrator.sandbox.runner import CommandRunner
from bundle_orchestrator.sandbox.workspace import WorkspaceManager
from bundle_orchestrator.sources.cache import SourceCache
from bundle_orchestrator.sources.fetcher import SourceFetcher
from bundle_orchestrator.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from bundle_orchestrator.artifacts.aggregator import FinalizedImage
    from bundle_orchestrator.builders.base import AdapterRegistry
    from bundle_orchestrator.control_plane.scheduler import BuildReport, TransitionCallback
    from bundle_orchestrator.domain.models import Manifest
    from bundle_orchestrator.planning.module_graph import ModuleGraph
    from bundle_orchestrator.sandbox.network_policy import NetworkDecision
    from bundle_orchestrator.sandbox.policy_resolver import ResolvedPolicy
    from bundle_orchestrator.sandbox.runner import CommandExecutor
    from bundle_orchestrator.sources.fetcher import FetchStats
    from bundle_orchestrator.sources.transports import ArchiveTransport, GitCheckoutTransport


def new_run_id(now: datetime | None = None) -> str:
    """Sortable, filesystem-safe identifier for one build run."""

    stamp = (now or datetime.now(tz=UTC)).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class ValidatedManifest:
    """Manifest that passed structural validation and grant resolution."""

    manifest: Manifest
    graph: ModuleGraph
    policy: ResolvedPolicy

    def to_dict(self) -> dict[str, object]:
        return {
            "app_id": self.manifest.app_id,
            "runtime": f"{self.manifest.runtime}/{self.manifest.runtime_version}",
            "sdk": self.manifest.sdk,
            "command": self.manifest.command,
            "modules": len(self.graph.names),
            "graph": self.graph.serialize(),
            "grants": self.policy.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class BuildOutcome:
    report: BuildReport
    policy: ResolvedPolicy
    paths: BuildPaths
    fetch_stats: FetchStats
    image: FinalizedImage | None = None

    @property
    def success(self) -> bool:
        return self.report.success and self.image is not None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.report.to_dict())
        payload["success"] = self.success
        payload["paths"] = self.paths.to_dict()
        payload["fetch"] = self.fetch_stats.to_dict()
        payload["runtime_grants"] = self.policy.runtime.to_args()
        payload["image"] = (
            None
            if self.image is None
            else {
                "root": str(self.image.root),
                "files_dir": str(self.image.files_dir),
                "metadata": str(self.image.metadata_path),
                "launch_metadata": str(self.image.launch_metadata_path),
                "file_count": self.image.file_count,
                "removed_by_cleanup": list(self.image.removed_by_cleanup),
            }
        )
        return payload


class BuildController:
    """Own one build run from manifest path to finalized image.

    Structural problems (manifest, graph, grants) raise from :meth:`validate`
    and :meth:`prepare` before any fetch or command is started.
    """

    def __init__(
        self,
        manifest_path: str | Path,
        *,
        config: Mapping[str, object] | None = None,
        run_id: str | None = None,
        base_dir: str | Path | None = None,
        cancel_token: CancellationToken | None = None,
        executor: CommandExecutor | None = None,
        archive_transport: ArchiveTransport | None = None,
        git_transport: GitCheckoutTransport | None = None,
        adapters: AdapterRegistry | None = None,
        on_transition: TransitionCallback | None = None,
        logger: Any | None = None,
    ) -> None:
        self._manifest_path = Path(manifest_path).expanduser().resolve(strict=False)
        self._config = assert_valid_config(config if config is not None else default_config())
        self._run_id = run_id or new_run_id()
        self._base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self._cancel_token = cancel_token or CancellationToken()
        self._executor = executor
        self._archive_transport = archive_transport
        self._git_transport = git_transport
        self._adapters = adapters
        self._on_transition = on_transition
        base_logger = logger if logger is not None else structlog.get_logger(__name__)
        self._logger = base_logger.bind(run_id=self._run_id)
        self._context: BuildContext | None = None

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def manifest_path(self) -> Path:
        return self._manifest_path

    @property
    def config(self) -> Mapping[str, Any]:
        return self._config

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @property
    def context(self) -> BuildContext | None:
        return self._context

    def validate(self) -> ValidatedManifest:
        """Parse the manifest, build its graph and resolve grants. No side effects."""

        manifest = load_manifest(self._manifest_path)
        implicit_order = ImplicitOrder(
            _as_str(_nested_get(self._config, ("build", "implicit_order"), None), "chain")
        )
        graph = build_module_graph(manifest.modules, implicit_order=implicit_order)
        policy = resolve_policy(manifest)
        self._logger.info(
            "manifest_validated",
            app_id=manifest.app_id,
            modules=len(graph.names),
            ordering=graph.ordering,
        )
        return ValidatedManifest(manifest=manifest, graph=graph, policy=policy)

    def prepare(self) -> BuildContext:
        """Validate the manifest and construct every per-run component."""

        validated = self.validate()
        manifest = validated.manifest
        paths = BuildPaths.from_config(self._config, base_dir=self._base_dir)

        network_policy = NetworkPolicy.for_manifest(
            manifest,
            mode=_as_str(_nested_get(self._config, ("network", "fetch_policy"), None), "allowlist"),
            extra_allowlist=_string_sequence(
                _nested_get(self._config, ("network", "allowlist"), ())
            ),
            decision_logger=self._log_network_decision,
        )
        fetcher = SourceFetcher(
            SourceCache(paths.cache_dir),
            network_policy=network_policy,
            archive_transport=self._archive_transport,
            git_transport=self._git_transport,
            timeout_seconds=_as_float(
                _nested_get(self._config, ("network", "timeout_seconds"), None), 300.0
            ),
        )
        command_timeout = _as_float(
            _nested_get(self._config, ("build", "command_timeout_seconds"), None), 0.0
        )
        runner = CommandRunner(
            self._executor,
            cancel_token=self._cancel_token,
            timeout_seconds=command_timeout if command_timeout > 0 else None,
        )
        parallelism = resolve_parallelism(
            _as_int(_nested_get(self._config, ("build", "parallelism"), None), 0)
        )
        context = BuildContext(
            run_id=self._run_id,
            manifest=manifest,
            graph=validated.graph,
            policy=validated.policy,
            paths=paths,
            network_policy=network_policy,
            fetcher=fetcher,
            workspaces=WorkspaceManager(
                paths.workspace_root,
                retain=bool(_nested_get(self._config, ("build", "retain_workspaces"), False)),
            ),
            runner=runner,
            image=ArtifactImage(
                paths.image_dir, prefix=manifest.build_options.prefix, logger=self._logger
            ),
            adapters=self._adapters if self._adapters is not None else default_registry(),
            cancel_token=self._cancel_token,
            parallelism=parallelism,
            config=self._config,
            logger=self._logger,
        )
        self._context = context
        self._logger.info(
            "build_prepared",
            parallelism=parallelism,
            fetch_policy=network_policy.mode.value,
            paths=paths.to_dict(),
        )
        return context

    async def run(self) -> BuildOutcome:
        """Build every module; finalize the image only when all modules installed."""

        context = self._context or self.prepare()
        context.image.prepare()
        scheduler = BuildScheduler(
            context,
            test_failure_policy=TestFailurePolicy(
                _as_str(
                    _nested_get(self._config, ("build", "test_failure_policy"), None), "fatal"
                )
            ),
            failure_mode=FailureMode(
                _as_str(_nested_get(self._config, ("build", "failure_mode"), None), "isolate")
            ),
            on_transition=self._on_transition,
            logger=self._logger,
        )
        report = await scheduler.run()

        finalized: FinalizedImage | None = None
        if report.success and not report.cancelled:
            finalized = await context.image.finalize(context.manifest, context.policy.runtime)
            self._logger.info(
                "image_finalized",
                root=str(finalized.root),
                file_count=finalized.file_count,
                removed_by_cleanup=len(finalized.removed_by_cleanup),
            )
        else:
            self._logger.warning(
                "image_not_finalized",
                failed=list(report.failed),
                blocked=list(report.blocked),
                cancelled=report.cancelled,
            )

        return BuildOutcome(
            report=report,
            policy=context.policy,
            paths=context.paths,
            fetch_stats=context.fetcher.stats,
            image=finalized,
        )

    def cancel(self, reason: str = "cancelled") -> None:
        self._logger.warning("build_cancel_requested", reason=reason)
        self._cancel_token.cancel(reason)

    def _log_network_decision(self, decision: NetworkDecision) -> None:
        log = self._logger.info if decision.allowed else self._logger.warning
        log(
            "network_policy_decision",
            host=decision.host,
            allowed=decision.allowed,
            mode=decision.mode.value,
            reason=decision.reason,
            matched_rule=decision.matched_rule,
            **dict(decision.context),
        )


def _nested_get(payload: Mapping[str, object], path: Sequence[str], default: object) -> object:
    current: object = payload
    for part in path:
        if not isinstance(current, Mapping):
            return default
        if part not in current:
            return default
        current = current[part]
    return current


def _as_str(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _as_int(value: object, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _as_float(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _string_sequence(value: object) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        return ()
    return tuple(item for item in value if isinstance(item, str) and item.strip())


__all__ = [
    "BuildController",
    "BuildOutcome",
    "ValidatedManifest",
    "new_run_id",
]
