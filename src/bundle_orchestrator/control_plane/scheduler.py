"""
Module build scheduler.

Each module walks ``pending -> fetching -> building -> (testing) -> installed``
or ends in ``failed``. A module is launched only once every dependency is
``installed``; independent modules run concurrently up to the configured
parallelism. When a module fails, everything downstream of it stays
``pending`` and is reported as blocked. With ``failure_mode="halt"`` no new
module is launched after the first failure, but in-flight modules finish.

Installed output is merged into the shared image before the module is marked
``installed``, so dependents always see their dependencies' files.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from bundle_orchestrator.builders.base import BuildPlan, BuildStep
from bundle_orchestrator.domain.errors import (
    BuildCancelled,
    BuildFailure,
    OrchestratorError,
    TestFailure,
)
from bundle_orchestrator.domain.models import FailureMode, ModuleState, TestFailurePolicy
from bundle_orchestrator.observability.logging import correlation_scope
from bundle_orchestrator.sandbox.runner import SandboxInvocation, compose_environment
from bundle_orchestrator.utils.concurrency import BoundedSemaphore, run_cancellable

if TYPE_CHECKING:
    from bundle_orchestrator.control_plane.context import BuildContext
    from bundle_orchestrator.domain.models import Module
    from bundle_orchestrator.sandbox.grants import SandboxGrant
    from bundle_orchestrator.sandbox.runner import CommandResult
    from bundle_orchestrator.sandbox.workspace import BuildWorkspace

TransitionCallback = Callable[[str, ModuleState, ModuleState], None]

_ALLOWED_TRANSITIONS: Final[dict[ModuleState, frozenset[ModuleState]]] = {
    ModuleState.PENDING: frozenset({ModuleState.FETCHING, ModuleState.FAILED}),
    ModuleState.FETCHING: frozenset({ModuleState.BUILDING, ModuleState.FAILED}),
    ModuleState.BUILDING: frozenset(
        {ModuleState.TESTING, ModuleState.INSTALLED, ModuleState.FAILED}
    ),
    ModuleState.TESTING: frozenset({ModuleState.INSTALLED, ModuleState.FAILED}),
    ModuleState.INSTALLED: frozenset(),
    ModuleState.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """The scheduler attempted a state change the module lifecycle does not allow."""


@dataclass(slots=True)
class ModuleRecord:
    name: str
    state: ModuleState = ModuleState.PENDING
    error: OrchestratorError | None = None
    warnings: list[str] = field(default_factory=list)
    timings_ms: dict[str, float] = field(default_factory=dict)
    blocked_by: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def blocked(self) -> bool:
        return bool(self.blocked_by)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self.state.value,
            "error": None if self.error is None else str(self.error),
            "error_type": None if self.error is None else type(self.error).__name__,
            "warnings": list(self.warnings),
            "timings_ms": {key: round(value, 3) for key, value in self.timings_ms.items()},
            "blocked_by": list(self.blocked_by),
            "started_at": None if self.started_at is None else self.started_at.isoformat(),
            "finished_at": None if self.finished_at is None else self.finished_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class BuildReport:
    """Outcome of one scheduler run, records in manifest order."""

    run_id: str
    records: tuple[ModuleRecord, ...]
    started_at: datetime
    finished_at: datetime
    peak_parallelism: int
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return all(record.state is ModuleState.INSTALLED for record in self.records)

    @property
    def installed(self) -> tuple[str, ...]:
        return self._names(ModuleState.INSTALLED)

    @property
    def failed(self) -> tuple[str, ...]:
        return self._names(ModuleState.FAILED)

    @property
    def blocked(self) -> tuple[str, ...]:
        return tuple(record.name for record in self.records if record.blocked)

    @property
    def not_started(self) -> tuple[str, ...]:
        """Pending modules that were not blocked by a failure (halt or cancellation)."""
        return tuple(
            record.name
            for record in self.records
            if record.state is ModuleState.PENDING and not record.blocked
        )

    def record(self, name: str) -> ModuleRecord:
        for record in self.records:
            if record.name == name:
                return record
        raise KeyError(name)

    def _names(self, state: ModuleState) -> tuple[str, ...]:
        return tuple(record.name for record in self.records if record.state is state)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "peak_parallelism": self.peak_parallelism,
            "installed": list(self.installed),
            "failed": list(self.failed),
            "blocked": list(self.blocked),
            "not_started": list(self.not_started),
            "modules": [record.to_dict() for record in self.records],
        }


class BuildScheduler:
    """Drive every module of ``context.graph`` through its lifecycle."""

    def __init__(
        self,
        context: BuildContext,
        *,
        test_failure_policy: TestFailurePolicy | str,
        failure_mode: FailureMode | str = FailureMode.ISOLATE,
        parallelism: int | None = None,
        on_transition: TransitionCallback | None = None,
        logger: Any | None = None,
    ) -> None:
        limit = parallelism if parallelism is not None else context.parallelism
        if limit <= 0:
            raise ValueError("parallelism must be > 0")
        self._ctx = context
        self._test_policy = TestFailurePolicy(test_failure_policy)
        self._failure_mode = FailureMode(failure_mode)
        self._semaphore = BoundedSemaphore(limit)
        self._on_transition = on_transition
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._records: dict[str, ModuleRecord] = {}
        self._halted = False

    @property
    def test_failure_policy(self) -> TestFailurePolicy:
        return self._test_policy

    @property
    def failure_mode(self) -> FailureMode:
        return self._failure_mode

    @property
    def parallelism(self) -> int:
        return self._semaphore.limit

    async def run(self) -> BuildReport:
        graph = self._ctx.graph
        order = graph.topological_order()
        self._records = {name: ModuleRecord(name) for name in graph.names}
        self._halted = False
        started_at = datetime.now(tz=UTC)
        self._logger.info(
            "build_started",
            run_id=self._ctx.run_id,
            modules=len(order),
            parallelism=self._semaphore.limit,
            failure_mode=self._failure_mode.value,
            test_failure_policy=self._test_policy.value,
        )

        launched: set[str] = set()
        running: dict[asyncio.Task[None], str] = {}
        try:
            while True:
                for name in self._ready(order, launched):
                    launched.add(name)
                    task = asyncio.create_task(self._run_module(name), name=f"module:{name}")
                    running[task] = name
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        self._mark_blocked()
        report = BuildReport(
            run_id=self._ctx.run_id,
            records=tuple(self._records[name] for name in graph.names),
            started_at=started_at,
            finished_at=datetime.now(tz=UTC),
            peak_parallelism=self._semaphore.peak,
            cancelled=self._ctx.cancel_token.is_cancelled,
        )
        self._logger.info(
            "build_finished",
            run_id=self._ctx.run_id,
            success=report.success,
            installed=len(report.installed),
            failed=list(report.failed),
            blocked=list(report.blocked),
            cancelled=report.cancelled,
        )
        return report

    def _ready(self, order: tuple[str, ...], launched: set[str]) -> list[str]:
        if self._halted or self._ctx.cancel_token.is_cancelled:
            return []
        graph = self._ctx.graph
        return [
            name
            for name in order
            if name not in launched
            and all(
                self._records[dep].state is ModuleState.INSTALLED
                for dep in graph.dependencies(name)
            )
        ]

    def _should_not_start(self) -> bool:
        return self._halted or self._ctx.cancel_token.is_cancelled

    async def _run_module(self, name: str) -> None:
        async with self._semaphore.permit():
            # Waiting for a permit may outlast a halt or cancellation.
            if self._should_not_start():
                return
            with correlation_scope(module=name):
                await self._build_module(self._ctx.graph.module(name))

    async def _build_module(self, module: Module) -> None:
        record = self._records[module.name]
        record.started_at = datetime.now(tz=UTC)
        workspace: BuildWorkspace | None = None
        try:
            workspace = await asyncio.to_thread(
                self._ctx.workspaces.create, module.name, self._ctx.run_id
            )
            self._transition(module.name, ModuleState.FETCHING)
            with self._timed(record, "fetch"):
                await run_cancellable(
                    self._ctx.fetcher.materialize(module, workspace), self._ctx.cancel_token
                )

            self._transition(module.name, ModuleState.BUILDING)
            plan = self._plan(module, workspace)
            with self._timed(record, "build"):
                for step in plan.build_steps:
                    result = await self._run_step(module, step, self._ctx.policy.build, workspace)
                    if not result.succeeded:
                        raise BuildFailure(
                            module.name,
                            f"{step.phase.value} step failed: {_describe_result(result)}",
                            command=step.argv,
                            returncode=result.returncode,
                            output_tail=result.tail(),
                        )

            if module.run_tests and plan.test_steps:
                self._transition(module.name, ModuleState.TESTING)
                with self._timed(record, "test"):
                    await self._run_tests(module, plan.test_steps, workspace, record)

            with self._timed(record, "merge"):
                try:
                    await self._ctx.image.merge(module, plan.install_root)
                except OSError as exc:
                    raise BuildFailure(module.name, f"merging into image failed: {exc}") from exc
            self._transition(module.name, ModuleState.INSTALLED)
        except OrchestratorError as exc:
            self._fail(record, exc)
        except OSError as exc:
            self._fail(record, BuildFailure(module.name, f"workspace error: {exc}"))
        except asyncio.CancelledError:
            if not self._ctx.cancel_token.is_cancelled:
                raise
            self._fail(record, BuildCancelled(module.name))
        finally:
            record.finished_at = datetime.now(tz=UTC)
            if workspace is not None:
                await asyncio.to_thread(self._ctx.workspaces.release, workspace)

    def _plan(self, module: Module, workspace: BuildWorkspace) -> BuildPlan:
        try:
            adapter = self._ctx.adapters.get(module.buildsystem)
            return adapter.plan(module, workspace, self._ctx.prefix)
        except (KeyError, ValueError) as exc:
            raise BuildFailure(module.name, f"cannot plan build: {exc}") from exc

    async def _run_tests(
        self,
        module: Module,
        steps: tuple[BuildStep, ...],
        workspace: BuildWorkspace,
        record: ModuleRecord,
    ) -> None:
        for step in steps:
            result = await self._run_step(module, step, self._ctx.policy.test, workspace)
            if result.succeeded:
                continue
            if result.cancelled:
                raise BuildCancelled(module.name)
            failure = TestFailure(
                module.name,
                f"tests failed: {_describe_result(result)}",
                command=step.argv,
                returncode=result.returncode,
                output_tail=result.tail(),
            )
            if self._test_policy is TestFailurePolicy.FATAL:
                raise failure
            record.warnings.append(str(failure))
            self._logger.warning(
                "advisory_test_failure",
                run_id=self._ctx.run_id,
                module=module.name,
                returncode=result.returncode,
            )
            return

    async def _run_step(
        self,
        module: Module,
        step: BuildStep,
        grant: SandboxGrant,
        workspace: BuildWorkspace,
    ) -> CommandResult:
        options = self._ctx.manifest.build_options
        env = compose_environment(
            grant,
            image_root=self._ctx.image.files_dir,
            prepend_path=options.prepend_path,
            append_path=options.append_path,
        )
        env.update(step.env)
        step.cwd.mkdir(parents=True, exist_ok=True)
        invocation = SandboxInvocation(
            module=module.name,
            phase=step.phase.value,
            argv=step.argv,
            cwd=step.cwd,
            env=env,
            grant=grant,
            mounts={
                str(self._ctx.image.files_dir): self._ctx.prefix,
                str(workspace.root): str(workspace.root),
            },
        )
        with correlation_scope(phase=step.phase.value):
            self._logger.debug(
                "build_step_started",
                run_id=self._ctx.run_id,
                module=module.name,
                phase=step.phase.value,
                command=step.describe(),
            )
            result = await self._ctx.runner.run(invocation)
        if result.cancelled:
            raise BuildCancelled(module.name)
        return result

    def _transition(self, name: str, target: ModuleState) -> None:
        record = self._records[name]
        current = record.state
        if target not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"module {name!r} cannot move from {current.value} to {target.value}"
            )
        record.state = target
        self._logger.info(
            "module_state_transition",
            run_id=self._ctx.run_id,
            module=name,
            from_state=current.value,
            to_state=target.value,
        )
        if self._on_transition is not None:
            self._on_transition(name, current, target)

    def _fail(self, record: ModuleRecord, error: OrchestratorError) -> None:
        record.error = error
        self._transition(record.name, ModuleState.FAILED)
        self._logger.error(
            "module_failed",
            run_id=self._ctx.run_id,
            module=record.name,
            error_type=type(error).__name__,
            error=str(error),
        )
        if self._failure_mode is FailureMode.HALT:
            self._halted = True

    def _mark_blocked(self) -> None:
        graph = self._ctx.graph
        failed = {
            name for name, record in self._records.items() if record.state is ModuleState.FAILED
        }
        if not failed:
            return
        for name, record in self._records.items():
            if record.state is not ModuleState.PENDING:
                continue
            record.blocked_by = tuple(
                dep for dep in graph.dependencies(name, transitive=True) if dep in failed
            )

    def _timed(self, record: ModuleRecord, label: str) -> _Timer:
        return _Timer(record, label)


class _Timer:
    __slots__ = ("_label", "_record", "_started")

    def __init__(self, record: ModuleRecord, label: str) -> None:
        self._record = record
        self._label = label
        self._started = 0.0

    def __enter__(self) -> None:
        self._started = time.perf_counter()

    def __exit__(self, *_exc: object) -> None:
        self._record.timings_ms[self._label] = (time.perf_counter() - self._started) * 1000.0


def _describe_result(result: CommandResult) -> str:
    if result.timed_out:
        return "timed out"
    return f"exit status {result.returncode}"


__all__ = [
    "BuildReport",
    "BuildScheduler",
    "InvalidTransitionError",
    "ModuleRecord",
    "TransitionCallback",
]
