"""Build-system adapter interface."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from bundle_orchestrator.domain.models import BuildSystemKind

if TYPE_CHECKING:
    from bundle_orchestrator.domain.models import Module
    from bundle_orchestrator.sandbox.workspace import BuildWorkspace


class StepPhase(StrEnum):
    CONFIGURE = "configure"
    BUILD = "build"
    INSTALL = "install"
    POST_INSTALL = "post-install"
    TEST = "test"


@dataclass(frozen=True, slots=True)
class BuildStep:
    """One command an adapter wants run; ``env`` is layered over the step environment."""

    phase: StepPhase
    argv: tuple[str, ...]
    cwd: Path
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.argv:
            raise ValueError("build step argv must not be empty")

    def describe(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class BuildPlan:
    """
    Steps for one module.

    ``build_steps`` run in order during ``Building`` and end with the install;
    ``test_steps`` run during ``Testing``. ``install_root`` is the directory whose
    contents are merged into the image, relative to the image prefix.
    """

    build_steps: tuple[BuildStep, ...]
    test_steps: tuple[BuildStep, ...]
    install_root: Path

    def to_dict(self) -> dict[str, object]:
        return {
            "build_steps": [
                {"phase": step.phase.value, "argv": list(step.argv), "cwd": str(step.cwd)}
                for step in self.build_steps
            ],
            "test_steps": [
                {"phase": step.phase.value, "argv": list(step.argv), "cwd": str(step.cwd)}
                for step in self.test_steps
            ],
            "install_root": str(self.install_root),
        }


class BuildSystemAdapter(Protocol):
    """Turns a module into opaque commands for one build system."""

    kind: BuildSystemKind

    def plan(self, module: Module, workspace: BuildWorkspace, prefix: str) -> BuildPlan: ...


class AdapterRegistry:
    """Adapters keyed by build-system kind; later registrations replace earlier ones."""

    def __init__(
        self, adapters: Mapping[BuildSystemKind, BuildSystemAdapter] | None = None
    ) -> None:
        self._adapters: dict[BuildSystemKind, BuildSystemAdapter] = dict(adapters or {})

    def register(self, adapter: BuildSystemAdapter, *, kind: BuildSystemKind | None = None) -> None:
        self._adapters[kind or adapter.kind] = adapter

    def get(self, kind: BuildSystemKind) -> BuildSystemAdapter:
        try:
            return self._adapters[kind]
        except KeyError:
            raise KeyError(f"no adapter registered for build system {kind.value!r}") from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters

    @property
    def kinds(self) -> tuple[BuildSystemKind, ...]:
        return tuple(sorted(self._adapters, key=lambda item: item.value))


__all__ = ["AdapterRegistry", "BuildPlan", "BuildStep", "BuildSystemAdapter", "StepPhase"]
