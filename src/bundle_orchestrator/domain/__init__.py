"""Domain models and error taxonomy."""

from bundle_orchestrator.domain.errors import (
    BuildCancelled,
    BuildFailure,
    ConflictingGrant,
    CyclicDependency,
    DanglingDependency,
    DuplicateModuleName,
    FetchError,
    IntegrityMismatch,
    ManifestError,
    OrchestratorError,
    TestFailure,
)
from bundle_orchestrator.domain.models import (
    ArchiveSource,
    BuildOptions,
    BuildSystemKind,
    FailureMode,
    GitSource,
    ImplicitOrder,
    LocalSource,
    Manifest,
    ManifestBuildOptions,
    Module,
    ModuleState,
    SourceDescriptor,
    TestFailurePolicy,
)

__all__ = [
    "ArchiveSource",
    "BuildCancelled",
    "BuildFailure",
    "BuildOptions",
    "BuildSystemKind",
    "ConflictingGrant",
    "CyclicDependency",
    "DanglingDependency",
    "DuplicateModuleName",
    "FailureMode",
    "FetchError",
    "GitSource",
    "ImplicitOrder",
    "IntegrityMismatch",
    "LocalSource",
    "Manifest",
    "ManifestBuildOptions",
    "ManifestError",
    "Module",
    "ModuleState",
    "OrchestratorError",
    "SourceDescriptor",
    "TestFailure",
    "TestFailurePolicy",
]
