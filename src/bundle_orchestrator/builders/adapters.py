"""
Default adapters for meson, cmake, cmake-ninja, autotools, and simple modules.

Every adapter builds out of tree in ``workspace.build_dir`` (autotools and
simple run where their scripts expect) and installs with ``DESTDIR`` set to
``workspace.install_dir``, so nothing is written to the real prefix.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final

from bundle_orchestrator.builders.base import AdapterRegistry, BuildPlan, BuildStep, StepPhase
from bundle_orchestrator.domain.models import BuildSystemKind
from bundle_orchestrator.manifest.options import render_build_options

if TYPE_CHECKING:
    from bundle_orchestrator.domain.models import Module
    from bundle_orchestrator.sandbox.workspace import BuildWorkspace

SHELL: Final[tuple[str, ...]] = ("/bin/sh", "-c")


def _default_jobs() -> int:
    return max(1, os.cpu_count() or 1)


def _effective_prefix(module: Module, prefix: str) -> str:
    """The module's configure prefix, which must sit inside the image prefix."""

    chosen = module.options.prefix or prefix
    if not PurePosixPath(chosen).is_relative_to(prefix):
        raise ValueError(
            f"module prefix {chosen!r} is outside the image prefix {prefix!r}; "
            "its files would never reach the image"
        )
    return chosen


def _shell_steps(
    commands: Sequence[str],
    phase: StepPhase,
    cwd: Path,
    env: Mapping[str, str],
) -> tuple[BuildStep, ...]:
    return tuple(BuildStep(phase, (*SHELL, command), cwd, env) for command in commands)


def _install_env(module: Module, workspace: BuildWorkspace, prefix: str) -> dict[str, str]:
    return {
        "DESTDIR": str(workspace.install_dir),
        "FLATPAK_DEST": str(workspace.prefix_dir(_effective_prefix(module, prefix))),
        "FLATPAK_ID": module.name,
    }


class MesonAdapter:
    kind = BuildSystemKind.MESON

    def plan(self, module: Module, workspace: BuildWorkspace, prefix: str) -> BuildPlan:
        build_dir = str(workspace.build_dir)
        env = _install_env(module, workspace, prefix)
        steps = [
            BuildStep(
                StepPhase.CONFIGURE,
                (
                    "meson",
                    "setup",
                    build_dir,
                    str(workspace.source_dir),
                    f"--prefix={_effective_prefix(module, prefix)}",
                    "--libdir=lib",
                    *render_build_options(self.kind, module.options),
                ),
                workspace.source_dir,
            ),
            BuildStep(StepPhase.BUILD, ("ninja", "-C", build_dir), workspace.build_dir),
            BuildStep(
                StepPhase.INSTALL, ("meson", "install", "-C", build_dir), workspace.build_dir, env
            ),
            *_shell_steps(module.post_install, StepPhase.POST_INSTALL, workspace.source_dir, env),
        ]
        tests: tuple[BuildStep, ...] = ()
        if module.run_tests:
            argv = (
                ("ninja", "-C", build_dir, module.test_rule)
                if module.test_rule
                else ("meson", "test", "-C", build_dir, "--print-errorlogs")
            )
            tests = (BuildStep(StepPhase.TEST, argv, workspace.build_dir),)
        return BuildPlan(tuple(steps), tests, workspace.prefix_dir(prefix))


class CMakeAdapter:
    kind = BuildSystemKind.CMAKE
    generator: str | None = None

    def __init__(self, *, jobs: int | None = None) -> None:
        self._jobs = jobs or _default_jobs()

    def plan(self, module: Module, workspace: BuildWorkspace, prefix: str) -> BuildPlan:
        build_dir = str(workspace.build_dir)
        env = _install_env(module, workspace, prefix)
        generator = self.generator or module.options.generator
        configure = [
            "cmake",
            "-S",
            str(workspace.source_dir),
            "-B",
            build_dir,
            f"-DCMAKE_INSTALL_PREFIX={_effective_prefix(module, prefix)}",
            "-DCMAKE_INSTALL_LIBDIR=lib",
        ]
        if generator:
            configure.extend(["-G", generator])
        configure.extend(render_build_options(module.buildsystem, module.options))

        steps = [
            BuildStep(StepPhase.CONFIGURE, tuple(configure), workspace.build_dir),
            BuildStep(
                StepPhase.BUILD,
                ("cmake", "--build", build_dir, "--parallel", str(self._jobs)),
                workspace.build_dir,
            ),
            BuildStep(
                StepPhase.INSTALL, ("cmake", "--install", build_dir), workspace.build_dir, env
            ),
            *_shell_steps(module.post_install, StepPhase.POST_INSTALL, workspace.source_dir, env),
        ]
        tests: tuple[BuildStep, ...] = ()
        if module.run_tests:
            argv = (
                ("cmake", "--build", build_dir, "--target", module.test_rule)
                if module.test_rule
                else ("ctest", "--test-dir", build_dir, "--output-on-failure")
            )
            tests = (BuildStep(StepPhase.TEST, argv, workspace.build_dir),)
        return BuildPlan(tuple(steps), tests, workspace.prefix_dir(prefix))


class CMakeNinjaAdapter(CMakeAdapter):
    kind = BuildSystemKind.CMAKE_NINJA
    generator = "Ninja"


class AutotoolsAdapter:
    kind = BuildSystemKind.AUTOTOOLS

    def __init__(self, *, jobs: int | None = None) -> None:
        self._jobs = jobs or _default_jobs()

    def plan(self, module: Module, workspace: BuildWorkspace, prefix: str) -> BuildPlan:
        source_dir = workspace.source_dir
        build_dir = workspace.build_dir
        env = _install_env(module, workspace, prefix)

        steps: list[BuildStep] = []
        if not (source_dir / "configure").exists():
            if (source_dir / "autogen.sh").exists():
                bootstrap: tuple[str, ...] = ("/bin/sh", "./autogen.sh")
            else:
                bootstrap = ("autoreconf", "--force", "--install")
            steps.append(
                BuildStep(StepPhase.CONFIGURE, bootstrap, source_dir, {"NOCONFIGURE": "1"})
            )
        steps.extend(
            [
                BuildStep(
                    StepPhase.CONFIGURE,
                    (
                        str(source_dir / "configure"),
                        f"--prefix={_effective_prefix(module, prefix)}",
                        *render_build_options(self.kind, module.options),
                    ),
                    build_dir,
                ),
                BuildStep(StepPhase.BUILD, ("make", f"-j{self._jobs}"), build_dir),
                BuildStep(
                    StepPhase.INSTALL,
                    ("make", "install", f"DESTDIR={workspace.install_dir}"),
                    build_dir,
                    env,
                ),
                *_shell_steps(module.post_install, StepPhase.POST_INSTALL, source_dir, env),
            ]
        )
        tests: tuple[BuildStep, ...] = ()
        if module.run_tests:
            tests = (BuildStep(StepPhase.TEST, ("make", module.test_rule or "check"), build_dir),)
        return BuildPlan(tuple(steps), tests, workspace.prefix_dir(prefix))


class SimpleAdapter:
    """Runs ``build-commands`` in the source tree; they install to ``$FLATPAK_DEST``."""

    kind = BuildSystemKind.SIMPLE

    def plan(self, module: Module, workspace: BuildWorkspace, prefix: str) -> BuildPlan:
        env = _install_env(module, workspace, prefix)
        workspace.prefix_dir(_effective_prefix(module, prefix)).mkdir(parents=True, exist_ok=True)
        steps = (
            *_shell_steps(module.build_commands, StepPhase.BUILD, workspace.source_dir, env),
            *_shell_steps(module.post_install, StepPhase.POST_INSTALL, workspace.source_dir, env),
        )
        tests: tuple[BuildStep, ...] = ()
        if module.run_tests and module.test_rule:
            tests = _shell_steps((module.test_rule,), StepPhase.TEST, workspace.source_dir, env)
        return BuildPlan(steps, tests, workspace.prefix_dir(prefix))


def default_registry(*, jobs: int | None = None) -> AdapterRegistry:
    """Registry holding the built-in adapters."""

    registry = AdapterRegistry()
    registry.register(MesonAdapter())
    registry.register(CMakeAdapter(jobs=jobs))
    registry.register(CMakeNinjaAdapter(jobs=jobs))
    registry.register(AutotoolsAdapter(jobs=jobs))
    registry.register(SimpleAdapter())
    return registry


__all__ = [
    "AutotoolsAdapter",
    "CMakeAdapter",
    "CMakeNinjaAdapter",
    "MesonAdapter",
    "SimpleAdapter",
    "default_registry",
]
