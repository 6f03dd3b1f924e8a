"""Immutable domain models for manifests, modules, and source descriptors."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from bundle_orchestrator.constants import DEFAULT_PREFIX

if TYPE_CHECKING:
    from collections.abc import Mapping

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$|^[0-9a-f]{64}$")
_MODULE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")


class ModuleState(StrEnum):
    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    TESTING = "testing"
    INSTALLED = "installed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ModuleState.INSTALLED, ModuleState.FAILED)


class BuildSystemKind(StrEnum):
    MESON = "meson"
    CMAKE = "cmake"
    CMAKE_NINJA = "cmake-ninja"
    AUTOTOOLS = "autotools"
    SIMPLE = "simple"


class TestFailurePolicy(StrEnum):
    """How a failing test step affects its module."""

    __test__ = False

    FATAL = "fatal"
    ADVISORY = "advisory"


class FailureMode(StrEnum):
    """How one module failure affects the rest of the run."""

    ISOLATE = "isolate"
    HALT = "halt"


class ImplicitOrder(StrEnum):
    """Meaning of manifest list order when no module declares explicit dependencies."""

    CHAIN = "chain"
    HINT = "hint"


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ArchiveSource:
    """Tarball or zip archive pinned by its SHA-256 digest."""

    url: str
    sha256: str
    strip_components: int = 1
    dest: str | None = None

    def __post_init__(self) -> None:
        if not self.url.strip():
            raise ValueError("archive url must not be empty")
        digest = self.sha256.strip().lower()
        if not _SHA256_RE.fullmatch(digest):
            raise ValueError(f"archive {self.url!r} must declare a 64-hex sha256 digest")
        object.__setattr__(self, "sha256", digest)
        if self.strip_components < 0:
            raise ValueError("strip_components must be >= 0")
        object.__setattr__(self, "dest", _normalize_dest(self.dest))

    @property
    def cache_key(self) -> str:
        return f"archive:{self.sha256}"


@dataclass(frozen=True, slots=True)
class GitSource:
    """Git repository pinned to an exact commit."""

    url: str
    commit: str
    tag: str | None = None
    dest: str | None = None

    def __post_init__(self) -> None:
        if not self.url.strip():
            raise ValueError("git url must not be empty")
        commit = self.commit.strip().lower()
        if not _COMMIT_RE.fullmatch(commit):
            raise ValueError(
                f"git source {self.url!r} must pin a full commit hash, got {self.commit!r}"
            )
        object.__setattr__(self, "commit", commit)
        object.__setattr__(self, "dest", _normalize_dest(self.dest))

    @property
    def cache_key(self) -> str:
        return f"git:{self.commit}"


@dataclass(frozen=True, slots=True)
class LocalSource:
    """In-tree directory; copied as-is with no fetch and no integrity check."""

    path: str
    dest: str | None = None

    def __post_init__(self) -> None:
        if not self.path.strip():
            raise ValueError("dir source path must not be empty")
        object.__setattr__(self, "dest", _normalize_dest(self.dest))


SourceDescriptor = ArchiveSource | GitSource | LocalSource


# ---------------------------------------------------------------------------
# Modules and manifest
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Typed view of a module's ``config-opts``.

    ``extra_args`` keeps options the engine does not interpret, in declaration order.
    """

    prefix: str | None = None
    buildtype: str | None = None
    generator: str | None = None
    defines: Mapping[str, str] = field(default_factory=dict)
    features: Mapping[str, bool] = field(default_factory=dict)
    packages: Mapping[str, str | bool] = field(default_factory=dict)
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Module:
    name: str
    buildsystem: BuildSystemKind
    options: BuildOptions = field(default_factory=BuildOptions)
    sources: tuple[SourceDescriptor, ...] = ()
    cleanup: tuple[str, ...] = ()
    run_tests: bool = False
    depends_on: tuple[str, ...] = ()
    build_commands: tuple[str, ...] = ()
    post_install: tuple[str, ...] = ()
    test_rule: str | None = None

    def __post_init__(self) -> None:
        if not _MODULE_NAME_RE.fullmatch(self.name):
            raise ValueError(f"invalid module name {self.name!r}")
        if self.buildsystem is BuildSystemKind.SIMPLE and not self.build_commands:
            raise ValueError(f"module {self.name!r} uses 'simple' but has no build-commands")


@dataclass(frozen=True, slots=True)
class ManifestBuildOptions:
    """Manifest-wide ``build-options``."""

    build_args: tuple[str, ...] = ()
    test_args: tuple[str, ...] = ()
    append_path: tuple[str, ...] = ()
    prepend_path: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    prefix: str = DEFAULT_PREFIX


@dataclass(frozen=True, slots=True)
class Manifest:
    app_id: str
    runtime: str
    runtime_version: str
    sdk: str
    command: str
    modules: tuple[Module, ...]
    finish_args: tuple[str, ...] = ()
    build_options: ManifestBuildOptions = field(default_factory=ManifestBuildOptions)
    cleanup: tuple[str, ...] = ()
    base_dir: str = "."

    @property
    def has_explicit_dependencies(self) -> bool:
        return any(module.depends_on for module in self.modules)

    def module(self, name: str) -> Module:
        for module in self.modules:
            if module.name == name:
                return module
        raise KeyError(f"unknown module: {name}")


def _normalize_dest(dest: str | None) -> str | None:
    if dest is None:
        return None
    posix = PurePosixPath(dest.strip())
    if not dest.strip() or posix.is_absolute() or ".." in posix.parts:
        raise ValueError(f"source dest must be a relative path inside the workspace: {dest!r}")
    return posix.as_posix()


__all__ = [
    "ArchiveSource",
    "BuildOptions",
    "BuildSystemKind",
    "FailureMode",
    "GitSource",
    "ImplicitOrder",
    "LocalSource",
    "Manifest",
    "ManifestBuildOptions",
    "Module",
    "ModuleState",
    "SourceDescriptor",
    "TestFailurePolicy",
]
