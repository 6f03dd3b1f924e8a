"""
Typed build options per build-system kind.

``config-opts`` in a manifest are free-form strings handed to an external build
system. The engine interprets a small, documented subset of them per kind and
keeps everything else, in order, in ``BuildOptions.extra_args``.

Recognized options
- meson: ``--prefix=P``, ``--buildtype=T`` / ``-Dbuildtype=T``, ``-Dkey=value``
- cmake, cmake-ninja: ``-DCMAKE_INSTALL_PREFIX=P``, ``-DCMAKE_BUILD_TYPE=T``,
  ``-DKEY[:TYPE]=VALUE``, ``-G NAME`` / ``-GNAME`` (cmake only)
- autotools: ``--prefix=P``, ``--enable-F[=yes|no]``, ``--disable-F``,
  ``--with-P[=V]``, ``--without-P``
- simple: nothing; every option is passed through
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Final

from bundle_orchestrator.domain.models import BuildOptions, BuildSystemKind

RECOGNIZED_OPTIONS: Final[Mapping[BuildSystemKind, tuple[str, ...]]] = {
    BuildSystemKind.MESON: ("prefix", "buildtype", "defines"),
    BuildSystemKind.CMAKE: ("prefix", "buildtype", "generator", "defines"),
    BuildSystemKind.CMAKE_NINJA: ("prefix", "buildtype", "defines"),
    BuildSystemKind.AUTOTOOLS: ("prefix", "features", "packages"),
    BuildSystemKind.SIMPLE: (),
}

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"yes", "true", "on", "1"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"no", "false", "off", "0"})


def parse_build_options(kind: BuildSystemKind, raw_options: Sequence[str]) -> BuildOptions:
    """Parse ``config-opts`` strings into typed options for ``kind``."""

    if kind is BuildSystemKind.MESON:
        return _parse_meson(raw_options)
    if kind in (BuildSystemKind.CMAKE, BuildSystemKind.CMAKE_NINJA):
        return _parse_cmake(raw_options, allow_generator=kind is BuildSystemKind.CMAKE)
    if kind is BuildSystemKind.AUTOTOOLS:
        return _parse_autotools(raw_options)
    return BuildOptions(extra_args=tuple(raw_options))


def render_build_options(kind: BuildSystemKind, options: BuildOptions) -> list[str]:
    """Render typed options back to command-line arguments for ``kind``.

    Prefix is not rendered here; adapters pass the effective prefix themselves.
    """

    args: list[str] = []
    if kind is BuildSystemKind.MESON:
        if options.buildtype is not None:
            args.append(f"--buildtype={options.buildtype}")
        args.extend(f"-D{key}={value}" for key, value in options.defines.items())
    elif kind in (BuildSystemKind.CMAKE, BuildSystemKind.CMAKE_NINJA):
        if options.buildtype is not None:
            args.append(f"-DCMAKE_BUILD_TYPE={options.buildtype}")
        args.extend(f"-D{key}={value}" for key, value in options.defines.items())
    elif kind is BuildSystemKind.AUTOTOOLS:
        for feature, enabled in options.features.items():
            args.append(f"--enable-{feature}" if enabled else f"--disable-{feature}")
        for package, value in options.packages.items():
            if value is False:
                args.append(f"--without-{package}")
            elif value is True:
                args.append(f"--with-{package}")
            else:
                args.append(f"--with-{package}={value}")
    args.extend(options.extra_args)
    return args


def _parse_meson(raw_options: Sequence[str]) -> BuildOptions:
    prefix: str | None = None
    buildtype: str | None = None
    defines: dict[str, str] = {}
    extra: list[str] = []

    for option in raw_options:
        if option.startswith("--prefix="):
            prefix = option.partition("=")[2]
        elif option.startswith("--buildtype="):
            buildtype = option.partition("=")[2]
        elif option.startswith("-D") and "=" in option:
            key, _, value = option[2:].partition("=")
            if key == "buildtype":
                buildtype = value
            elif key == "prefix":
                prefix = value
            else:
                defines[key] = value
        else:
            extra.append(option)

    return BuildOptions(
        prefix=prefix, buildtype=buildtype, defines=defines, extra_args=tuple(extra)
    )


def _parse_cmake(raw_options: Sequence[str], *, allow_generator: bool) -> BuildOptions:
    prefix: str | None = None
    buildtype: str | None = None
    generator: str | None = None
    defines: dict[str, str] = {}
    extra: list[str] = []

    pending_generator = False
    for option in raw_options:
        if pending_generator:
            generator = option
            pending_generator = False
            continue
        if allow_generator and option == "-G":
            pending_generator = True
            continue
        if allow_generator and option.startswith("-G"):
            generator = option[2:]
            continue
        if option.startswith("-D") and "=" in option:
            key, _, value = option[2:].partition("=")
            bare_key = key.partition(":")[0]
            if bare_key == "CMAKE_INSTALL_PREFIX":
                prefix = value
            elif bare_key == "CMAKE_BUILD_TYPE":
                buildtype = value
            else:
                defines[key] = value
            continue
        extra.append(option)

    if pending_generator:
        extra.append("-G")

    return BuildOptions(
        prefix=prefix,
        buildtype=buildtype,
        generator=generator,
        defines=defines,
        extra_args=tuple(extra),
    )


def _parse_autotools(raw_options: Sequence[str]) -> BuildOptions:
    prefix: str | None = None
    features: dict[str, bool] = {}
    packages: dict[str, str | bool] = {}
    extra: list[str] = []

    for option in raw_options:
        name, has_value, value = option.partition("=")
        if name == "--prefix" and has_value:
            prefix = value
        elif name.startswith("--enable-"):
            enabled = _parse_switch(value) if has_value else True
            if enabled is None:
                extra.append(option)
            else:
                features[name.removeprefix("--enable-")] = enabled
        elif name.startswith("--disable-") and not has_value:
            features[name.removeprefix("--disable-")] = False
        elif name.startswith("--with-"):
            packages[name.removeprefix("--with-")] = value if has_value else True
        elif name.startswith("--without-") and not has_value:
            packages[name.removeprefix("--without-")] = False
        else:
            extra.append(option)

    return BuildOptions(
        prefix=prefix, features=features, packages=packages, extra_args=tuple(extra)
    )


def _parse_switch(value: str) -> bool | None:
    lowered = value.strip().lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    return None


__all__ = ["RECOGNIZED_OPTIONS", "parse_build_options", "render_build_options"]
