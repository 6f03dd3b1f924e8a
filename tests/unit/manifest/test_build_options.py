from __future__ import annotations

import pytest

from bundle_orchestrator.domain.models import BuildOptions, BuildSystemKind
from bundle_orchestrator.manifest.options import (
    RECOGNIZED_OPTIONS,
    parse_build_options,
    render_build_options,
)


def test_meson_options() -> None:
    options = parse_build_options(
        BuildSystemKind.MESON,
        [
            "--prefix=/opt/x",
            "-Dbuildtype=debugoptimized",
            "-Dgtk_doc=false",
            "--wrap-mode=nofallback",
        ],
    )

    assert options.prefix == "/opt/x"
    assert options.buildtype == "debugoptimized"
    assert options.defines == {"gtk_doc": "false"}
    assert options.extra_args == ("--wrap-mode=nofallback",)
    assert render_build_options(BuildSystemKind.MESON, options) == [
        "--buildtype=debugoptimized",
        "-Dgtk_doc=false",
        "--wrap-mode=nofallback",
    ]


def test_cmake_generator_forms() -> None:
    split = parse_build_options(BuildSystemKind.CMAKE, ["-G", "Unix Makefiles"])
    joined = parse_build_options(BuildSystemKind.CMAKE, ["-GNinja"])

    assert split.generator == "Unix Makefiles"
    assert joined.generator == "Ninja"


def test_cmake_ninja_does_not_take_a_generator() -> None:
    options = parse_build_options(BuildSystemKind.CMAKE_NINJA, ["-GNinja"])

    assert options.generator is None
    assert options.extra_args == ("-GNinja",)


def test_cmake_typed_defines() -> None:
    options = parse_build_options(
        BuildSystemKind.CMAKE,
        [
            "-DCMAKE_INSTALL_PREFIX:PATH=/app",
            "-DCMAKE_BUILD_TYPE=RelWithDebInfo",
            "-DBUILD_SHARED_LIBS:BOOL=ON",
        ],
    )

    assert options.prefix == "/app"
    assert options.buildtype == "RelWithDebInfo"
    assert options.defines == {"BUILD_SHARED_LIBS:BOOL": "ON"}
    assert render_build_options(BuildSystemKind.CMAKE, options) == [
        "-DCMAKE_BUILD_TYPE=RelWithDebInfo",
        "-DBUILD_SHARED_LIBS:BOOL=ON",
    ]


def test_autotools_features_and_packages() -> None:
    options = parse_build_options(
        BuildSystemKind.AUTOTOOLS,
        [
            "--prefix=/app",
            "--enable-shared",
            "--enable-static=no",
            "--disable-docs",
            "--with-zlib=/app",
            "--with-ssl",
            "--without-x",
            "--enable-maybe=perhaps",
            "CFLAGS=-O2",
        ],
    )

    assert options.prefix == "/app"
    assert options.features == {"shared": True, "static": False, "docs": False}
    assert options.packages == {"zlib": "/app", "ssl": True, "x": False}
    assert options.extra_args == ("--enable-maybe=perhaps", "CFLAGS=-O2")
    assert render_build_options(BuildSystemKind.AUTOTOOLS, options) == [
        "--enable-shared",
        "--disable-static",
        "--disable-docs",
        "--with-zlib=/app",
        "--with-ssl",
        "--without-x",
        "--enable-maybe=perhaps",
        "CFLAGS=-O2",
    ]


def test_simple_passes_everything_through() -> None:
    options = parse_build_options(BuildSystemKind.SIMPLE, ["--prefix=/x", "-Dy=z"])

    assert options == BuildOptions(extra_args=("--prefix=/x", "-Dy=z"))


@pytest.mark.parametrize("kind", list(BuildSystemKind))
def test_every_kind_lists_recognized_options(kind: BuildSystemKind) -> None:
    assert kind in RECOGNIZED_OPTIONS
