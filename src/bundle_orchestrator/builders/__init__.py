"""Build-system adapters that turn modules into opaque command plans."""

from bundle_orchestrator.builders.adapters import (
    AutotoolsAdapter,
    CMakeAdapter,
    CMakeNinjaAdapter,
    MesonAdapter,
    SimpleAdapter,
    default_registry,
)
from bundle_orchestrator.builders.base import (
    AdapterRegistry,
    BuildPlan,
    BuildStep,
    BuildSystemAdapter,
    StepPhase,
)

__all__ = [
    "AdapterRegistry",
    "AutotoolsAdapter",
    "BuildPlan",
    "BuildStep",
    "BuildSystemAdapter",
    "CMakeAdapter",
    "CMakeNinjaAdapter",
    "MesonAdapter",
    "SimpleAdapter",
    "StepPhase",
    "default_registry",
]
