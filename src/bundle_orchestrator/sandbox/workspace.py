"""Per-module build workspace lifecycle."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from bundle_orchestrator.constants import (
    WORKSPACE_BUILD_DIR,
    WORKSPACE_INSTALL_DIR,
    WORKSPACE_SOURCE_DIR,
)
from bundle_orchestrator.utils.fs import atomic_write, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable

_WORKSPACE_METADATA_FILE = ".bundle-workspace.json"
_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._+-]+$")


@dataclass(frozen=True, slots=True)
class BuildWorkspace:
    """
    Directory tree owned by one module's build.

    - ``source_dir``: materialized sources
    - ``build_dir``: out-of-tree build directory
    - ``install_dir``: DESTDIR root; the module installs under ``install_dir/<prefix>``
    """

    module: str
    root: Path
    created_at: datetime

    @property
    def source_dir(self) -> Path:
        return self.root / WORKSPACE_SOURCE_DIR

    @property
    def build_dir(self) -> Path:
        return self.root / WORKSPACE_BUILD_DIR

    @property
    def install_dir(self) -> Path:
        return self.root / WORKSPACE_INSTALL_DIR

    def prefix_dir(self, prefix: str) -> Path:
        """Where files installed to ``prefix`` land inside ``install_dir``."""
        relative = PurePosixPath(prefix).relative_to("/")
        return self.install_dir.joinpath(*relative.parts)


class WorkspaceManager:
    """Create and destroy per-module workspaces under one root."""

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        retain: bool = False,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(workspace_root).expanduser().resolve(strict=False)
        self._retain = retain
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def retain(self) -> bool:
        return self._retain

    def create(self, module: str, run_id: str) -> BuildWorkspace:
        """Create a fresh workspace; a stale one left by an earlier run is removed first."""

        module_id = _validate_identifier(module, "module")
        run = _validate_identifier(run_id, "run_id")
        workspace = BuildWorkspace(
            module=module_id,
            root=self._root / run / module_id,
            created_at=self._now_fn(),
        )

        with self._lock:
            self._root.mkdir(parents=True, exist_ok=True)
            if workspace.root.exists() or workspace.root.is_symlink():
                safe_delete(workspace.root, self._root)
            for directory in (workspace.source_dir, workspace.build_dir, workspace.install_dir):
                directory.mkdir(parents=True)

        metadata = {
            "module": workspace.module,
            "run_id": run,
            "created_at": workspace.created_at.isoformat(),
        }
        atomic_write(
            workspace.root / _WORKSPACE_METADATA_FILE,
            json.dumps(metadata, sort_keys=True) + "\n",
        )
        return workspace

    def release(self, workspace: BuildWorkspace) -> bool:
        """Destroy ``workspace`` unless retention is enabled; returns whether it was removed."""

        if self._retain or not workspace.root.exists():
            return False
        with self._lock:
            safe_delete(workspace.root, self._root)
            run_dir = workspace.root.parent
            if run_dir.exists() and not any(run_dir.iterdir()):
                run_dir.rmdir()
        return True


def _validate_identifier(value: str, field_name: str) -> str:
    normalized = value.strip()
    if not normalized or not _SAFE_ID_PATTERN.fullmatch(normalized) or normalized in {".", ".."}:
        raise ValueError(f"{field_name} contains unsupported characters: {value!r}")
    return normalized


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = ["BuildWorkspace", "WorkspaceManager"]
