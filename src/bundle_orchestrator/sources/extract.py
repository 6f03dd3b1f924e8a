"""Archive extraction with leading-component stripping."""

from __future__ import annotations

import copy
import posixpath
import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath


class UnsupportedArchiveError(ValueError):
    """The file is neither a tar nor a zip archive."""


def extract_archive(archive: Path, destination: Path, *, strip_components: int = 1) -> int:
    """Extract ``archive`` into ``destination``; returns the number of entries written.

    Entries with no more than ``strip_components`` path parts are skipped.
    """

    destination.mkdir(parents=True, exist_ok=True)
    if zipfile.is_zipfile(archive):
        return _extract_zip(archive, destination, strip_components)
    if tarfile.is_tarfile(archive):
        return _extract_tar(archive, destination, strip_components)
    raise UnsupportedArchiveError(f"{archive.name}: unsupported archive format")


def _strip(name: str, strip_components: int) -> str | None:
    parts = [part for part in PurePosixPath(name).parts if part not in ("", ".", "/")]
    if ".." in parts:
        raise ValueError(f"archive entry escapes the extraction root: {name!r}")
    remaining = parts[strip_components:]
    if not remaining:
        return None
    return PurePosixPath(*remaining).as_posix()


def _extract_tar(archive: Path, destination: Path, strip_components: int) -> int:
    written = 0
    with tarfile.open(archive, mode="r:*") as tar:
        for member in tar.getmembers():
            stripped = _strip(member.name, strip_components)
            if stripped is None:
                continue
            entry = copy.copy(member)
            entry.name = stripped
            if entry.islnk():
                link_target = _strip(entry.linkname, strip_components)
                if link_target is None:
                    continue
                entry.linkname = link_target
            elif entry.issym():
                entry.linkname = _relink(member.name, member.linkname, stripped, strip_components)
            try:
                tar.extract(entry, destination, filter="data")
            except tarfile.FilterError as exc:
                raise ValueError(f"unsafe archive entry {member.name!r}: {exc}") from exc
            written += 1
    return written


def _relink(name: str, linkname: str, stripped: str, strip_components: int) -> str:
    """Re-express a relative symlink target from the entry's stripped location."""

    if posixpath.isabs(linkname):
        return linkname
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(name), linkname))
    if resolved == ".." or resolved.startswith("../"):
        return linkname
    target = _strip(resolved, strip_components) or "."
    return posixpath.relpath(target, posixpath.dirname(stripped) or ".")


def _extract_zip(archive: Path, destination: Path, strip_components: int) -> int:
    written = 0
    with zipfile.ZipFile(archive) as bundle:
        for info in bundle.infolist():
            stripped = _strip(info.filename, strip_components)
            if stripped is None:
                continue
            target = destination / stripped
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with bundle.open(info) as source, target.open("wb") as sink:
                shutil.copyfileobj(source, sink)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                target.chmod(mode)
            written += 1
    return written


__all__ = ["UnsupportedArchiveError", "extract_archive"]
