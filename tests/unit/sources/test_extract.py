from __future__ import annotations

import io
import tarfile
import zipfile
from typing import TYPE_CHECKING

import pytest

from bundle_orchestrator.sources.extract import UnsupportedArchiveError, extract_archive

if TYPE_CHECKING:
    from pathlib import Path


def _write_tar(path: Path, entries: dict[str, bytes]) -> Path:
    with tarfile.open(path, mode="w:xz") as archive:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return path


def test_tar_strips_leading_component(tmp_path: Path) -> None:
    archive = _write_tar(
        tmp_path / "pkg.tar.xz",
        {"pkg-1.0/configure": b"#!/bin/sh\n", "pkg-1.0/src/a.c": b"int a;\n", "pkg-1.0": b""},
    )

    written = extract_archive(archive, tmp_path / "out")

    assert written == 2
    assert (tmp_path / "out" / "configure").read_bytes() == b"#!/bin/sh\n"
    assert (tmp_path / "out" / "src" / "a.c").is_file()


def test_zip_with_strip_two(tmp_path: Path) -> None:
    archive = tmp_path / "pkg.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("outer/inner/data/file.txt", "payload")
        bundle.writestr("outer/README", "skipped")

    written = extract_archive(archive, tmp_path / "out", strip_components=2)

    assert written == 1
    assert (tmp_path / "out" / "data" / "file.txt").read_text(encoding="utf-8") == "payload"
    assert not (tmp_path / "out" / "README").exists()


def test_traversal_entry_is_rejected(tmp_path: Path) -> None:
    archive = _write_tar(tmp_path / "evil.tar.xz", {"pkg/../../etc/passwd": b"root"})

    with pytest.raises(ValueError, match="escapes the extraction root"):
        extract_archive(archive, tmp_path / "out")

    assert not (tmp_path / "etc").exists()


def test_unknown_format_is_rejected(tmp_path: Path) -> None:
    archive = tmp_path / "notes.txt"
    archive.write_text("not an archive", encoding="utf-8")

    with pytest.raises(UnsupportedArchiveError):
        extract_archive(archive, tmp_path / "out")


def _write_tar_with_links(path: Path, links: dict[str, str]) -> Path:
    with tarfile.open(path, mode="w:gz") as archive:
        data = b"1.2.13\n"
        info = tarfile.TarInfo("zlib-1.2.13/lib/libz.so.1")
        info.size = len(data)
        archive.addfile(info, io.BytesIO(data))
        for name, target in links.items():
            link = tarfile.TarInfo(name)
            link.type = tarfile.SYMTYPE
            link.linkname = target
            archive.addfile(link)
    return path


def test_relative_links_are_rebased_after_stripping(tmp_path: Path) -> None:
    archive = _write_tar_with_links(
        tmp_path / "zlib.tar.gz",
        {
            "zlib-1.2.13/lib/libz.so": "libz.so.1",
            "zlib-1.2.13/current": "../zlib-1.2.13/lib/libz.so.1",
        },
    )

    written = extract_archive(archive, tmp_path / "out")

    out = tmp_path / "out"
    assert written == 3
    assert (out / "lib" / "libz.so").readlink().as_posix() == "libz.so.1"
    assert (out / "current").readlink().as_posix() == "lib/libz.so.1"
    assert (out / "current").read_bytes() == b"1.2.13\n"


def test_absolute_link_is_rejected(tmp_path: Path) -> None:
    archive = _write_tar_with_links(
        tmp_path / "evil.tar.gz", {"zlib-1.2.13/etc-link": "/etc/hosts"}
    )

    with pytest.raises(ValueError, match="unsafe archive entry 'zlib-1.2.13/etc-link'"):
        extract_archive(archive, tmp_path / "out")

    assert not (tmp_path / "out" / "etc-link").exists()
