"""Artifact image: layered merge, ownership, cleanup and launch metadata."""

from __future__ import annotations

import configparser
import json
from typing import TYPE_CHECKING

import pytest
from structlog.testing import capture_logs

from bundle_orchestrator.artifacts.aggregator import (
    ArtifactImage,
    ImageFinalizedError,
    render_launch_metadata,
)
from bundle_orchestrator.domain.models import BuildSystemKind, Manifest, Module
from bundle_orchestrator.sandbox.grants import SandboxGrant, parse_declaration

if TYPE_CHECKING:
    from pathlib import Path


def _module(name: str, *cleanup: str) -> Module:
    return Module(name=name, buildsystem=BuildSystemKind.MESON, cleanup=cleanup)


def _manifest(*modules: Module, cleanup: tuple[str, ...] = ()) -> Manifest:
    return Manifest(
        app_id="org.example.Viewer",
        runtime="org.example.Platform",
        runtime_version="24.08",
        sdk="org.example.Sdk",
        command="viewer",
        modules=modules,
        cleanup=cleanup,
    )


def _grant(*declarations: str) -> SandboxGrant:
    return SandboxGrant.of(parse_declaration(item) for item in declarations)


def _install(root: Path, files: dict[str, str]) -> Path:
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


async def test_merge_applies_module_cleanup_and_records_owners(tmp_path: Path) -> None:
    image = ArtifactImage(tmp_path / "image", prefix="/app")
    image.prepare()
    install = _install(
        tmp_path / "zlib",
        {"lib/libz.so": "so", "lib/libz.la": "la", "include/zlib.h": "h"},
    )

    layer = await image.merge(_module("zlib", "*.la"), install)

    assert layer.files == ("include/zlib.h", "lib/libz.so")
    assert layer.removed_by_cleanup == ("lib/libz.la",)
    assert not (image.files_dir / "lib" / "libz.la").exists()
    assert image.owners == {"include/zlib.h": "zlib", "lib/libz.so": "zlib"}


async def test_later_layer_overwrites_and_records_overlap(tmp_path: Path) -> None:
    image = ArtifactImage(tmp_path / "image", prefix="/app")
    image.prepare()
    first = _install(tmp_path / "a", {"share/data.txt": "from a"})
    second = _install(tmp_path / "b", {"share/data.txt": "from b"})

    await image.merge(_module("a"), first)
    with capture_logs() as logs:
        layer = await image.merge(_module("b"), second)

    overlaps = [(item.path, item.previous_owner) for item in layer.overlaps]
    assert overlaps == [("share/data.txt", "a")]
    assert (image.files_dir / "share" / "data.txt").read_text(encoding="utf-8") == "from b"
    assert image.owners["share/data.txt"] == "b"
    assert any(entry["event"] == "image_path_overlap" for entry in logs)


async def test_merge_of_missing_install_root_is_empty(tmp_path: Path) -> None:
    image = ArtifactImage(tmp_path / "image", prefix="/app")

    layer = await image.merge(_module("headers"), tmp_path / "never-installed")

    assert layer.files == ()
    assert image.layers == (layer,)


async def test_same_module_cannot_merge_twice(tmp_path: Path) -> None:
    image = ArtifactImage(tmp_path / "image", prefix="/app")
    install = _install(tmp_path / "a", {"bin/a": "a"})
    await image.merge(_module("a"), install)

    with pytest.raises(ValueError, match="already merged"):
        await image.merge(_module("a"), install)


async def test_finalize_writes_metadata_and_rejects_later_merges(tmp_path: Path) -> None:
    image = ArtifactImage(tmp_path / "image", prefix="/app")
    image.prepare()
    install = _install(
        tmp_path / "viewer",
        {"bin/viewer": "#!", "share/man/man1/viewer.1": "man", "share/icons/v.png": "png"},
    )
    module = _module("viewer")
    await image.merge(module, install)
    manifest = _manifest(module, cleanup=("/share/man",))
    runtime = _grant("--share=ipc", "--socket=wayland", "--env=GDK_BACKEND=wayland")

    result = await image.finalize(manifest, runtime)

    assert image.finalized
    assert result.removed_by_cleanup == ("share/man/man1/viewer.1",)
    assert result.file_count == 2
    document = json.loads(result.metadata_path.read_text(encoding="utf-8"))
    assert document["app_id"] == "org.example.Viewer"
    assert sorted(document["files"]) == ["bin/viewer", "share/icons/v.png"]
    assert document["owners"] == {"bin/viewer": "viewer", "share/icons/v.png": "viewer"}
    assert document["runtime_grants"] == [
        "--share=ipc",
        "--socket=wayland",
        "--env=GDK_BACKEND=wayland",
    ]
    assert [layer["module"] for layer in document["layers"]] == ["viewer"]
    assert result.launch_metadata_path.is_file()

    with pytest.raises(ImageFinalizedError):
        await image.merge(_module("late"), install)
    with pytest.raises(ImageFinalizedError):
        await image.finalize(manifest, runtime)


def test_launch_metadata_keyfile() -> None:
    manifest = _manifest(_module("viewer"))
    runtime = _grant(
        "--share=network",
        "--socket=x11",
        "--device=dri",
        "--filesystem=xdg-pictures:ro",
        "--talk-name=org.freedesktop.Notifications",
        "--system-talk-name=org.freedesktop.UPower",
        "--env=LANG=C.UTF-8",
    )

    text = render_launch_metadata(manifest, runtime, arch="amd64")

    parser = configparser.ConfigParser(interpolation=None, delimiters=("=",))
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser.read_string(text)
    assert dict(parser["Application"]) == {
        "name": "org.example.Viewer",
        "runtime": "org.example.Platform/x86_64/24.08",
        "sdk": "org.example.Sdk/x86_64/24.08",
        "command": "viewer",
    }
    assert parser["Context"]["shared"] == "network;"
    assert parser["Context"]["sockets"] == "x11;"
    assert parser["Context"]["devices"] == "dri;"
    assert parser["Context"]["filesystems"] == "xdg-pictures:ro;"
    assert parser["Session Bus Policy"]["org.freedesktop.Notifications"] == "talk"
    assert parser["System Bus Policy"]["org.freedesktop.UPower"] == "talk"
    assert parser["Environment"]["LANG"] == "C.UTF-8"
    assert "command=viewer" in text


def test_launch_metadata_without_grants_has_only_application() -> None:
    text = render_launch_metadata(_manifest(_module("viewer")), SandboxGrant(), arch="aarch64")

    parser = configparser.ConfigParser(interpolation=None, delimiters=("=",))
    parser.read_string(text)
    assert parser.sections() == ["Application"]
