"""
Cleanup globs as a path-set filter.

Paths are relative to the install prefix and use POSIX separators.

- ``/share/man``: anchored at the prefix; matches that path and everything below it.
  Each pattern component is a glob matched against the path component at the
  same depth (``/lib/*.a`` does not match ``lib/x/y.a``).
- ``*.la``: unanchored; matches any path with a component (file or directory
  name) matching the glob, so ``man`` removes every ``man`` directory.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath

from bundle_orchestrator.utils.fs import iter_tree


@dataclass(frozen=True, slots=True)
class CleanupFilter:
    patterns: tuple[str, ...]

    @classmethod
    def of(cls, patterns: Iterable[str]) -> CleanupFilter:
        return cls(tuple(pattern.strip() for pattern in patterns if pattern.strip()))

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def matches(self, path: str) -> bool:
        parts = PurePosixPath(path).parts
        return any(_matches(pattern, parts) for pattern in self.patterns)

    def split(self, paths: Iterable[str]) -> tuple[list[str], list[str]]:
        """Partition ``paths`` into ``(kept, removed)``, preserving order."""

        kept: list[str] = []
        removed: list[str] = []
        for path in paths:
            (removed if self.matches(path) else kept).append(path)
        return kept, removed


def _matches(pattern: str, parts: Sequence[str]) -> bool:
    if pattern.startswith("/"):
        pattern_parts = PurePosixPath(pattern.lstrip("/")).parts
        if not pattern_parts or len(pattern_parts) > len(parts):
            return False
        return all(
            fnmatchcase(part, glob) for part, glob in zip(parts, pattern_parts, strict=False)
        )
    return any(fnmatchcase(part, pattern) for part in parts)


def remove_matching(root: Path, cleanup: CleanupFilter) -> list[str]:
    """Delete files and links under ``root`` matched by ``cleanup``; prune emptied directories."""

    if not cleanup or not root.is_dir():
        return []
    _, removed = cleanup.split(iter_tree(root))
    touched_dirs: set[Path] = set()
    for rel_path in removed:
        target = root / rel_path
        target.unlink(missing_ok=True)
        touched_dirs.update(target.parents)

    for directory in sorted(touched_dirs, key=lambda item: len(item.parts), reverse=True):
        if directory == root or not directory.is_relative_to(root):
            continue
        if directory.is_dir() and not directory.is_symlink() and not any(directory.iterdir()):
            directory.rmdir()
    return removed


__all__ = ["CleanupFilter", "remove_matching"]
