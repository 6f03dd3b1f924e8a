"""
Layered artifact image.

Each installed module contributes one ``ImageLayer``. Layers are merged under an
``asyncio.Lock`` so the image has a single writer. A later layer overwrites a
path an earlier layer owned; the overlap is logged and recorded on the layer.
"""

from __future__ import annotations

import asyncio
import configparser
import io
import json
import platform
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from bundle_orchestrator.artifacts.cleanup import CleanupFilter, remove_matching
from bundle_orchestrator.constants import (
    IMAGE_FILES_DIR,
    IMAGE_METADATA_FILE,
    IMAGE_METADATA_SCHEMA_VERSION,
    LAUNCH_METADATA_FILE,
)
from bundle_orchestrator.sandbox.grants import BusToken
from bundle_orchestrator.utils.fs import atomic_write, iter_tree
from bundle_orchestrator.utils.hashing import create_manifest, manifest_digest

if TYPE_CHECKING:
    from bundle_orchestrator.domain.models import Manifest, Module
    from bundle_orchestrator.sandbox.grants import SandboxGrant

_FLATPAK_ARCH = {"amd64": "x86_64", "arm64": "aarch64", "i686": "i386"}


class ImageFinalizedError(RuntimeError):
    """The image no longer accepts layers."""


@dataclass(frozen=True, slots=True)
class PathOverlap:
    path: str
    previous_owner: str


@dataclass(frozen=True, slots=True)
class ImageLayer:
    module: str
    files: tuple[str, ...]
    removed_by_cleanup: tuple[str, ...]
    overlaps: tuple[PathOverlap, ...]
    digest: str
    merged_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "files": list(self.files),
            "removed_by_cleanup": list(self.removed_by_cleanup),
            "overlaps": [
                {"path": item.path, "previous_owner": item.previous_owner} for item in self.overlaps
            ],
            "digest": self.digest,
            "merged_at": self.merged_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class FinalizedImage:
    root: Path
    files_dir: Path
    metadata_path: Path
    launch_metadata_path: Path
    file_count: int
    removed_by_cleanup: tuple[str, ...]


class ArtifactImage:
    def __init__(self, root: str | Path, *, prefix: str, logger: Any | None = None) -> None:
        self._root = Path(root).expanduser().resolve(strict=False)
        self._prefix = prefix
        self._lock = asyncio.Lock()
        self._owners: dict[str, str] = {}
        self._layers: list[ImageLayer] = []
        self._finalized = False
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def files_dir(self) -> Path:
        """Contents of the install prefix."""
        return self._root / IMAGE_FILES_DIR

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def layers(self) -> tuple[ImageLayer, ...]:
        return tuple(self._layers)

    @property
    def owners(self) -> dict[str, str]:
        return dict(sorted(self._owners.items()))

    @property
    def finalized(self) -> bool:
        return self._finalized

    def prepare(self) -> None:
        """Start from an empty image directory."""
        if self._root.exists():
            shutil.rmtree(self._root)
        self.files_dir.mkdir(parents=True)

    async def merge(self, module: Module, install_root: Path) -> ImageLayer:
        """Apply ``module.cleanup`` to ``install_root`` and merge what remains."""

        async with self._lock:
            if self._finalized:
                raise ImageFinalizedError(f"cannot merge {module.name!r}: image is finalized")
            if any(layer.module == module.name for layer in self._layers):
                raise ValueError(f"module {module.name!r} was already merged")
            layer = await asyncio.to_thread(self._merge_sync, module, install_root)
            self._layers.append(layer)
        for overlap in layer.overlaps:
            self._logger.warning(
                "image_path_overlap",
                module=module.name,
                path=overlap.path,
                previous_owner=overlap.previous_owner,
            )
        return layer

    async def finalize(self, manifest: Manifest, runtime_grant: SandboxGrant) -> FinalizedImage:
        """Apply manifest-wide cleanup and write ``image.json`` and ``metadata``."""

        async with self._lock:
            if self._finalized:
                raise ImageFinalizedError("image is already finalized")
            result = await asyncio.to_thread(self._finalize_sync, manifest, runtime_grant)
            self._finalized = True
        return result

    def _merge_sync(self, module: Module, install_root: Path) -> ImageLayer:
        self.files_dir.mkdir(parents=True, exist_ok=True)
        if not install_root.is_dir():
            return ImageLayer(module.name, (), (), (), manifest_digest({}))

        kept, removed = CleanupFilter.of(module.cleanup).split(iter_tree(install_root))
        overlaps: list[PathOverlap] = []
        for rel_path in kept:
            previous = self._owners.get(rel_path)
            if previous is not None and previous != module.name:
                overlaps.append(PathOverlap(rel_path, previous))
            _copy_entry(install_root / rel_path, self.files_dir, rel_path)
            self._owners[rel_path] = module.name

        entries = create_manifest(install_root)
        digest = manifest_digest({path: entries[path] for path in kept if path in entries})
        return ImageLayer(module.name, tuple(kept), tuple(removed), tuple(overlaps), digest)

    def _finalize_sync(self, manifest: Manifest, runtime_grant: SandboxGrant) -> FinalizedImage:
        self.files_dir.mkdir(parents=True, exist_ok=True)
        removed = remove_matching(self.files_dir, CleanupFilter.of(manifest.cleanup))
        for rel_path in removed:
            self._owners.pop(rel_path, None)

        files = create_manifest(self.files_dir)
        document = {
            "schema_version": IMAGE_METADATA_SCHEMA_VERSION,
            "app_id": manifest.app_id,
            "runtime": manifest.runtime,
            "runtime_version": manifest.runtime_version,
            "sdk": manifest.sdk,
            "command": manifest.command,
            "prefix": self._prefix,
            "layers": [layer.to_dict() for layer in self._layers],
            "owners": self.owners,
            "files": files,
            "removed_by_cleanup": removed,
            "runtime_grants": runtime_grant.to_args(),
        }
        metadata_path = self._root / IMAGE_METADATA_FILE
        atomic_write(metadata_path, json.dumps(document, indent=2, sort_keys=True) + "\n")

        launch_path = self._root / LAUNCH_METADATA_FILE
        atomic_write(launch_path, render_launch_metadata(manifest, runtime_grant))
        return FinalizedImage(
            root=self._root,
            files_dir=self.files_dir,
            metadata_path=metadata_path,
            launch_metadata_path=launch_path,
            file_count=len(files),
            removed_by_cleanup=tuple(removed),
        )


def render_launch_metadata(
    manifest: Manifest,
    runtime_grant: SandboxGrant,
    *,
    arch: str | None = None,
) -> str:
    """Flatpak-style keyfile describing how to launch the application."""

    machine = arch or platform.machine().lower()
    machine = _FLATPAK_ARCH.get(machine, machine)

    parser = configparser.ConfigParser(interpolation=None, delimiters=("=",))
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser["Application"] = {
        "name": manifest.app_id,
        "runtime": f"{manifest.runtime}/{machine}/{manifest.runtime_version}",
        "sdk": f"{manifest.sdk}/{machine}/{manifest.runtime_version}",
        "command": manifest.command,
    }

    context: dict[str, str] = {}
    for key, values in (
        ("shared", runtime_grant.shares),
        ("sockets", runtime_grant.sockets),
        ("devices", runtime_grant.devices),
        (
            "filesystems",
            tuple(
                token.to_arg().removeprefix("--filesystem=")
                for token in runtime_grant.filesystems
            ),
        ),
        ("unset-environment", runtime_grant.unset_env),
    ):
        if values:
            context[key] = "".join(f"{value};" for value in values)
    if context:
        parser["Context"] = context

    session_bus: dict[str, str] = {}
    system_bus: dict[str, str] = {}
    for token in runtime_grant:
        if isinstance(token, BusToken):
            access = "own" if token.flag.endswith("own-name") else "talk"
            target = system_bus if token.flag.startswith("system-") else session_bus
            target[token.name] = access
    if session_bus:
        parser["Session Bus Policy"] = session_bus
    if system_bus:
        parser["System Bus Policy"] = system_bus

    if runtime_grant.env:
        parser["Environment"] = runtime_grant.env

    buffer = io.StringIO()
    parser.write(buffer, space_around_delimiters=False)
    return buffer.getvalue()


def _copy_entry(source: Path, root: Path, rel_path: str) -> None:
    destination = root / rel_path
    for depth in range(1, len(Path(rel_path).parts)):
        parent = root.joinpath(*Path(rel_path).parts[:depth])
        # A file or link from an earlier layer may sit where this layer needs a directory.
        if (parent.is_symlink() or parent.is_file()) and not parent.is_dir():
            parent.unlink()
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.is_symlink() or destination.is_file():
        destination.unlink()
    elif destination.is_dir():
        shutil.rmtree(destination)
    if source.is_symlink():
        destination.symlink_to(source.readlink())
    else:
        shutil.copy2(source, destination)


__all__ = [
    "ArtifactImage",
    "FinalizedImage",
    "ImageFinalizedError",
    "ImageLayer",
    "PathOverlap",
    "render_launch_metadata",
]
