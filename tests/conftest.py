"""Shared fakes for bundle-orchestrator tests.

- ``FakeArchiveTransport`` / ``FakeGitTransport``: in-memory transports that
  record every request.
- ``ScriptedExecutor``: command executor whose exit codes, delays, and
  installed files are scripted per ``(module, phase)``.
- ``write_manifest`` / ``make_config``: temp-dir manifest and config builders.
"""

from __future__ import annotations

import asyncio
import io
import tarfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import yaml

from bundle_orchestrator.config.schema import default_config, merge_config
from bundle_orchestrator.domain.errors import FetchError
from bundle_orchestrator.sandbox.runner import CommandResult, SandboxInvocation
from bundle_orchestrator.utils.concurrency import CancellationToken, run_cancellable
from bundle_orchestrator.utils.hashing import sha256_bytes


class FakeArchiveTransport:
    def __init__(self, payloads: Mapping[str, bytes] | None = None) -> None:
        self.payloads: dict[str, bytes] = dict(payloads or {})
        self.requests: list[str] = []

    def download(self, url: str, destination: Path, *, timeout_seconds: float) -> None:
        self.requests.append(url)
        if url not in self.payloads:
            raise FetchError("404 not found", url=url)
        destination.write_bytes(self.payloads[url])


class FakeGitTransport:
    def __init__(
        self,
        trees: Mapping[str, Mapping[str, str]] | None = None,
        *,
        heads: Mapping[str, str] | None = None,
    ) -> None:
        self.trees = {url: dict(files) for url, files in (trees or {}).items()}
        self.heads = dict(heads or {})
        self.requests: list[tuple[str, str]] = []

    def checkout(
        self,
        url: str,
        commit: str,
        destination: Path,
        *,
        timeout_seconds: float,
    ) -> str:
        self.requests.append((url, commit))
        for rel_path, content in self.trees.get(url, {}).items():
            target = destination / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        (destination / ".git").mkdir(exist_ok=True)
        return self.heads.get(url, commit)


@dataclass
class StepScript:
    returncode: int = 0
    delay: float = 0.0
    output: str = ""
    files: Mapping[str, str] = field(default_factory=dict)
    before: Callable[[SandboxInvocation], None] | None = None


class ScriptedExecutor:
    """Records invocations; unscripted steps succeed immediately."""

    def __init__(self) -> None:
        self.calls: list[SandboxInvocation] = []
        self.active = 0
        self.peak = 0
        self._scripts: dict[tuple[str, str], StepScript] = {}

    def on(self, module: str, phase: str, **script: Any) -> ScriptedExecutor:
        self._scripts[(module, phase)] = StepScript(**script)
        return self

    def calls_for(self, module: str) -> list[SandboxInvocation]:
        return [call for call in self.calls if call.module == module]

    async def __call__(
        self,
        invocation: SandboxInvocation,
        *,
        cancel_token: CancellationToken,
        timeout_seconds: float | None,
    ) -> CommandResult:
        self.calls.append(invocation)
        script = self._scripts.get((invocation.module, invocation.phase), StepScript())
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if script.before is not None:
                script.before(invocation)
            if script.delay:
                try:
                    await run_cancellable(asyncio.sleep(script.delay), cancel_token)
                except asyncio.CancelledError:
                    if not cancel_token.is_cancelled:
                        raise
                    return CommandResult(invocation, None, "", 0.0, cancelled=True)
            dest = invocation.env.get("FLATPAK_DEST")
            if dest is not None:
                for rel_path, content in script.files.items():
                    target = Path(dest) / rel_path
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_text(content, encoding="utf-8")
        finally:
            self.active -= 1
        return CommandResult(invocation, script.returncode, script.output, 1.0)


def make_tarball(files: Mapping[str, str], *, top: str = "pkg-1.0") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for rel_path, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{rel_path}")
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def archive_transport() -> FakeArchiveTransport:
    return FakeArchiveTransport()


@pytest.fixture
def git_transport() -> FakeGitTransport:
    return FakeGitTransport()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def tarball() -> Callable[..., tuple[bytes, str]]:
    """Build a gzip tarball; returns ``(bytes, sha256)``."""

    def _build(files: Mapping[str, str], *, top: str = "pkg-1.0") -> tuple[bytes, str]:
        payload = make_tarball(files, top=top)
        return payload, sha256_bytes(payload)

    return _build


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[..., Path]:
    def _write(
        modules: list[dict[str, Any]],
        *,
        name: str = "manifest.yaml",
        **top_level: Any,
    ) -> Path:
        document: dict[str, Any] = {
            "app-id": "org.example.App",
            "runtime": "org.example.Platform",
            "runtime-version": "24.08",
            "sdk": "org.example.Sdk",
            "command": "example-app",
            **top_level,
            "modules": modules,
        }
        path = tmp_path / name
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., dict[str, Any]]:
    """Defaults with every state directory under ``tmp_path/state``."""

    def _make(**sections: Mapping[str, Any]) -> dict[str, Any]:
        state = tmp_path / "state"
        base = merge_config(
            default_config(),
            {
                "build": {"parallelism": 2},
                "paths": {
                    "workspace_root": str(state / "workspaces"),
                    "cache_dir": str(state / "cache"),
                    "image_dir": str(state / "image"),
                },
                "observability": {"log_dir": str(state / "logs")},
            },
        )
        return merge_config(base, dict(sections))

    return _make


def simple_module(name: str, *, command: str = "true", **extra: Any) -> dict[str, Any]:
    return {"name": name, "buildsystem": "simple", "build-commands": [command], **extra}


@pytest.fixture
def module_spec() -> Callable[..., dict[str, Any]]:
    return simple_module
