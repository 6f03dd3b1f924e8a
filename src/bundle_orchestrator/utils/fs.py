"""
bundle-orchestrator: filesystem utilities

Purpose
- Atomic file and directory publication, guarded deletion, and tree copies
  used by the source cache, workspaces, and the artifact image.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Deletion refuses paths outside the given root.
- Tree copies preserve symlinks instead of following them.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "copy_tree",
    "iter_tree",
    "publish_directory",
    "safe_delete",
    "staging_directory",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            with os.fdopen(fd, "w", encoding=encoding) as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def staging_directory(final_path: PathLike) -> Path:
    """Create an empty sibling directory to build ``final_path`` in before publishing."""

    target = Path(final_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=f".{target.name}.", suffix=".partial", dir=target.parent))


def publish_directory(staged: PathLike, final_path: PathLike) -> bool:
    """
    Rename ``staged`` to ``final_path``.

    Returns ``False`` (and removes ``staged``) when another writer published the
    same path first; the existing directory is kept.
    """

    staged_path = Path(staged)
    target = Path(final_path)
    try:
        os.rename(staged_path, target)
    except OSError:
        if not target.is_dir():
            raise
        shutil.rmtree(staged_path, ignore_errors=True)
        return False
    _fsync_directory(target.parent)
    return True


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    candidate = target.parent.resolve(strict=True) / target.name
    if not candidate.is_relative_to(workspace):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    resolved_target = target.resolve(strict=True)
    if not resolved_target.is_relative_to(workspace):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def iter_tree(root: PathLike) -> Iterator[str]:
    """Yield relative POSIX paths of files and symlinks under ``root`` in sorted order."""

    base = Path(root)
    for current_dir, dir_names, file_names in os.walk(base, topdown=True, followlinks=False):
        dir_names.sort()
        current = Path(current_dir)
        linked_dirs = [name for name in dir_names if (current / name).is_symlink()]
        for name in sorted([*file_names, *linked_dirs]):
            yield (current / name).relative_to(base).as_posix()


def copy_tree(source: PathLike, destination: PathLike, *, exclude: tuple[str, ...] = ()) -> None:
    """Copy ``source`` into ``destination``, merging directories and keeping symlinks.

    ``exclude`` holds glob patterns matched against entry names at every level.
    """

    ignore = shutil.ignore_patterns(*exclude) if exclude else None
    shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True, ignore=ignore)


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
