"""Control-plane public API."""

from bundle_orchestrator.control_plane.context import BuildContext, BuildPaths
from bundle_orchestrator.control_plane.controller import (
    BuildController,
    BuildOutcome,
    ValidatedManifest,
    new_run_id,
)
from bundle_orchestrator.control_plane.scheduler import (
    BuildReport,
    BuildScheduler,
    InvalidTransitionError,
    ModuleRecord,
    TransitionCallback,
)

__all__ = [
    "BuildContext",
    "BuildController",
    "BuildOutcome",
    "BuildPaths",
    "BuildReport",
    "BuildScheduler",
    "InvalidTransitionError",
    "ModuleRecord",
    "TransitionCallback",
    "ValidatedManifest",
    "new_run_id",
]
