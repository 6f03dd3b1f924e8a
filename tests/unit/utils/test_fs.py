from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from bundle_orchestrator.utils.fs import (
    atomic_write,
    copy_tree,
    iter_tree,
    publish_directory,
    safe_delete,
    staging_directory,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_replaces_content_without_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "image.json"
    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_bytes() == b"second"
    assert [entry.name for entry in tmp_path.iterdir()] == ["image.json"]


def test_atomic_write_requires_existing_directory(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(NotADirectoryError):
        atomic_write(blocker / "child.txt", "data")


def test_publish_directory_keeps_first_writer(tmp_path: Path) -> None:
    final = tmp_path / "cache" / "entry"
    first = staging_directory(final)
    (first / "marker").write_text("first", encoding="utf-8")
    second = staging_directory(final)
    (second / "marker").write_text("second", encoding="utf-8")

    assert first.name.endswith(".partial")
    assert publish_directory(first, final) is True
    assert publish_directory(second, final) is False
    assert (final / "marker").read_text(encoding="utf-8") == "first"
    assert not second.exists()


def test_safe_delete_refuses_paths_outside_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError, match="outside root"):
        safe_delete(outside, root)
    assert outside.exists()


def test_safe_delete_unlinks_symlink_without_following(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    target_dir = tmp_path / "elsewhere"
    target_dir.mkdir()
    (target_dir / "data").write_text("keep", encoding="utf-8")
    link = root / "link"
    os.symlink(target_dir, link)

    safe_delete(link, root)

    assert not link.exists()
    assert (target_dir / "data").exists()


def test_safe_delete_removes_directories(tmp_path: Path) -> None:
    victim = tmp_path / "build"
    (victim / "obj").mkdir(parents=True)

    safe_delete(victim, tmp_path)

    assert not victim.exists()


def test_iter_tree_lists_files_and_linked_directories(tmp_path: Path) -> None:
    (tmp_path / "share" / "doc").mkdir(parents=True)
    (tmp_path / "share" / "doc" / "README").write_text("r", encoding="utf-8")
    (tmp_path / "bin").mkdir()
    (tmp_path / "bin" / "tool").write_text("t", encoding="utf-8")
    os.symlink("share", tmp_path / "data")

    assert sorted(iter_tree(tmp_path)) == ["bin/tool", "data", "share/doc/README"]


def test_copy_tree_merges_and_skips_excluded_names(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / ".git").mkdir(parents=True)
    (source / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    (source / "sub").mkdir()
    (source / "sub" / "main.c").write_text("int main;", encoding="utf-8")
    destination = tmp_path / "dest"
    destination.mkdir()
    (destination / "existing").write_text("kept", encoding="utf-8")

    copy_tree(source, destination, exclude=(".git",))

    assert sorted(iter_tree(destination)) == ["existing", "sub/main.c"]
