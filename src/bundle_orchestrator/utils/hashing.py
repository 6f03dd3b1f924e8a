"""
bundle-orchestrator: hashing utilities

Purpose
- SHA-256 helpers for bytes, files, and whole directory trees.
- Deterministic per-file manifests for the artifact image.

Functional requirements
- Manifest paths are relative POSIX strings in sorted order.
- Symlinks are recorded by their target text, never followed.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
from pathlib import Path

PathLike = str | os.PathLike[str]

_FILE_READ_CHUNK_BYTES = 1024 * 1024

__all__ = [
    "create_manifest",
    "manifest_digest",
    "sha256_bytes",
    "sha256_file",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> str:
    """Return SHA-256 hex digest for a file read in chunks."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    with Path(path).open("rb") as file_handle:
        while chunk := file_handle.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def create_manifest(directory: PathLike) -> dict[str, str]:
    """
    Build a deterministic file manifest for ``directory``.

    Keys are relative POSIX paths. Values are the SHA-256 of a regular file's
    content, or of ``"symlink:" + target`` for symbolic links.
    """

    root = Path(directory).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    manifest: dict[str, str] = {}
    for current_dir, dir_names, file_names in os.walk(root, topdown=True, followlinks=False):
        dir_names.sort()
        current = Path(current_dir)
        # Symlinked directories are listed in dir_names but must be recorded as links.
        for name in sorted([*file_names, *(d for d in dir_names if (current / d).is_symlink())]):
            file_path = current / name
            try:
                mode = file_path.lstat().st_mode
            except FileNotFoundError:
                continue
            rel_path = file_path.relative_to(root).as_posix()
            if stat.S_ISLNK(mode):
                manifest[rel_path] = sha256_bytes(f"symlink:{os.readlink(file_path)}".encode())
            elif stat.S_ISREG(mode):
                manifest[rel_path] = sha256_file(file_path)

    return dict(sorted(manifest.items()))


def manifest_digest(manifest: dict[str, str]) -> str:
    """Digest of a manifest mapping, stable across runs."""

    payload = json.dumps(manifest, sort_keys=True, separators=(",", ":"))
    return sha256_bytes(payload.encode("utf-8"))
