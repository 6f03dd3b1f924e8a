"""
Command execution for build and test steps.

``CommandRunner`` does not isolate anything itself. Each step is described by a
``SandboxInvocation`` (argv, working directory, environment, grant set, and the
image mount) which is what an OS-level sandbox launcher consumes; the default
executor runs it as a host subprocess.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Protocol

from bundle_orchestrator.sandbox.grants import SandboxGrant
from bundle_orchestrator.sandbox.policy_resolver import environment_for
from bundle_orchestrator.utils.concurrency import CancellationToken, run_cancellable

_OUTPUT_TAIL_LINES: Final[int] = 40
_HOST_ENV_KEYS: Final[tuple[str, ...]] = ("PATH", "HOME", "LANG", "TERM", "TMPDIR")


@dataclass(frozen=True, slots=True)
class SandboxInvocation:
    """One command as an external sandbox would launch it."""

    module: str
    phase: str
    argv: tuple[str, ...]
    cwd: Path
    env: Mapping[str, str] = field(default_factory=dict)
    grant: SandboxGrant = field(default_factory=SandboxGrant)
    mounts: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.argv:
            raise ValueError("argv must not be empty")

    @property
    def network(self) -> bool:
        return self.grant.allows_network

    def to_dict(self) -> dict[str, object]:
        return {
            "module": self.module,
            "phase": self.phase,
            "argv": list(self.argv),
            "cwd": str(self.cwd),
            "env": dict(sorted(self.env.items())),
            "grants": self.grant.to_args(),
            "mounts": dict(self.mounts),
            "network": self.network,
        }


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized result of one executed step."""

    invocation: SandboxInvocation
    returncode: int | None
    output: str
    duration_ms: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and not self.cancelled and self.returncode == 0

    def tail(self, lines: int = _OUTPUT_TAIL_LINES) -> str:
        return "\n".join(self.output.splitlines()[-lines:])


class CommandExecutor(Protocol):
    async def __call__(
        self,
        invocation: SandboxInvocation,
        *,
        cancel_token: CancellationToken,
        timeout_seconds: float | None,
    ) -> CommandResult: ...


class SubprocessExecutor:
    """Run invocations as host subprocesses in their own process group."""

    async def __call__(
        self,
        invocation: SandboxInvocation,
        *,
        cancel_token: CancellationToken,
        timeout_seconds: float | None,
    ) -> CommandResult:
        started = time.perf_counter()
        process = await asyncio.create_subprocess_exec(
            *invocation.argv,
            cwd=str(invocation.cwd),
            env=dict(invocation.env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            raw_output, _ = await run_cancellable(
                process.communicate(), cancel_token, timeout_seconds=timeout_seconds
            )
        except TimeoutError:
            await _terminate(process)
            return CommandResult(
                invocation=invocation,
                returncode=None,
                output="",
                duration_ms=_elapsed_ms(started),
                timed_out=True,
            )
        except asyncio.CancelledError:
            await _terminate(process)
            if not cancel_token.is_cancelled:
                raise
            return CommandResult(
                invocation=invocation,
                returncode=None,
                output="",
                duration_ms=_elapsed_ms(started),
                cancelled=True,
            )

        return CommandResult(
            invocation=invocation,
            returncode=process.returncode,
            output=raw_output.decode("utf-8", errors="replace") if raw_output else "",
            duration_ms=_elapsed_ms(started),
        )


class CommandRunner:
    """Execute invocations through a pluggable executor and keep a history."""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._executor: CommandExecutor = executor or SubprocessExecutor()
        self._cancel_token = cancel_token or CancellationToken()
        self._timeout_seconds = timeout_seconds
        self._history: list[SandboxInvocation] = []

    @property
    def history(self) -> tuple[SandboxInvocation, ...]:
        return tuple(self._history)

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    async def run(self, invocation: SandboxInvocation) -> CommandResult:
        self._history.append(invocation)
        if self._cancel_token.is_cancelled:
            return CommandResult(
                invocation=invocation, returncode=None, output="", duration_ms=0.0, cancelled=True
            )
        return await self._executor(
            invocation,
            cancel_token=self._cancel_token,
            timeout_seconds=self._timeout_seconds,
        )


def compose_environment(
    grant: SandboxGrant,
    *,
    image_root: Path,
    prepend_path: Sequence[str] = (),
    append_path: Sequence[str] = (),
    host_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Environment for one step.

    Only a few host variables are inherited. Search paths point into the image so
    a module sees everything its dependencies installed. Grant environment is
    applied last, then ``prepend_path``/``append_path`` wrap ``PATH``.
    """

    source = os.environ if host_env is None else host_env
    env = {key: source[key] for key in _HOST_ENV_KEYS if key in source}

    lib_dirs = [image_root / "lib", image_root / "lib64"]
    _prepend(env, "PATH", [str(image_root / "bin")])
    _prepend(env, "LD_LIBRARY_PATH", [str(path) for path in lib_dirs])
    _prepend(
        env,
        "PKG_CONFIG_PATH",
        [str(path / "pkgconfig") for path in lib_dirs] + [str(image_root / "share" / "pkgconfig")],
    )
    _prepend(env, "CMAKE_PREFIX_PATH", [str(image_root)])
    _prepend(env, "XDG_DATA_DIRS", [str(image_root / "share")])

    env = environment_for(grant, env)
    _prepend(env, "PATH", list(prepend_path))
    if append_path:
        current = env.get("PATH", "")
        env["PATH"] = os.pathsep.join([part for part in (current, *append_path) if part])
    return env


def _prepend(env: dict[str, str], key: str, entries: Sequence[str]) -> None:
    if not entries:
        return
    current = env.get(key)
    env[key] = os.pathsep.join([*entries, current] if current else list(entries))


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandRunner",
    "SandboxInvocation",
    "SubprocessExecutor",
    "compose_environment",
]
