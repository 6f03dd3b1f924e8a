"""
Manifest loading and validation.

Manifests use flatpak-builder key names and may be written in YAML or JSON
(JSON documents load through the same YAML reader). Validation is strict:
unknown keys are rejected unless they are flatpak keys this engine accepts and
ignores, or ``x-`` extension keys.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Final, NoReturn, cast

import yaml

from bundle_orchestrator.domain.errors import ManifestError
from bundle_orchestrator.domain.models import (
    ArchiveSource,
    BuildSystemKind,
    GitSource,
    LocalSource,
    Manifest,
    ManifestBuildOptions,
    Module,
    SourceDescriptor,
)
from bundle_orchestrator.manifest.options import parse_build_options

_LOGGER = logging.getLogger(__name__)

_MANIFEST_KEYS: Final[frozenset[str]] = frozenset(
    {
        "app-id",
        "id",
        "runtime",
        "runtime-version",
        "sdk",
        "command",
        "finish-args",
        "build-options",
        "cleanup",
        "modules",
    }
)
_MANIFEST_IGNORED_KEYS: Final[frozenset[str]] = frozenset(
    {
        "sdk-extensions",
        "branch",
        "tags",
        "desktop-file-name-suffix",
        "rename-icon",
        "rename-desktop-file",
        "rename-appdata-file",
        "separate-locales",
        "cleanup-commands",
    }
)
_BUILD_OPTIONS_KEYS: Final[frozenset[str]] = frozenset(
    {"build-args", "test-args", "append-path", "prepend-path", "env", "prefix"}
)
_BUILD_OPTIONS_IGNORED_KEYS: Final[frozenset[str]] = frozenset(
    {"cflags", "cxxflags", "ldflags", "cppflags", "append-ld-library-path", "strip", "no-debuginfo"}
)
_MODULE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "buildsystem",
        "config-opts",
        "sources",
        "cleanup",
        "run-tests",
        "depends-on",
        "build-commands",
        "post-install",
        "test-rule",
        "modules",
    }
)
_MODULE_IGNORED_KEYS: Final[frozenset[str]] = frozenset(
    {"builddir", "make-args", "make-install-args", "no-autogen", "no-parallel-make"}
)
_SOURCE_KEYS: Final[Mapping[str, frozenset[str]]] = {
    "archive": frozenset({"type", "url", "sha256", "strip-components", "dest"}),
    "git": frozenset({"type", "url", "commit", "tag", "branch", "dest"}),
    "dir": frozenset({"type", "path", "dest"}),
}


def load_manifest(path: str | Path) -> Manifest:
    """Load and validate a manifest file."""

    manifest_path = Path(path).expanduser().resolve()
    payload = _load_document(manifest_path)
    return parse_manifest(payload, base_dir=manifest_path.parent)


def parse_manifest(payload: object, *, base_dir: str | Path = ".") -> Manifest:
    """Validate an already-decoded manifest document."""

    root = _expect_object(payload, "", allowed=_MANIFEST_KEYS, ignored=_MANIFEST_IGNORED_KEYS)
    base = Path(base_dir)

    app_id_raw = root.get("app-id", root.get("id"))
    if app_id_raw is None:
        _fail("app-id", "is required")
    app_id = _as_str(app_id_raw, "app-id")

    raw_modules = _as_list(_require(root, "modules", ""), "modules")
    if not raw_modules:
        _fail("modules", "must declare at least one module")
    modules = tuple(
        _parse_module(item, f"modules[{index}]", base)
        for index, item in enumerate(raw_modules)
    )

    build_options = ManifestBuildOptions()
    if "build-options" in root:
        build_options = _parse_build_options(root["build-options"], "build-options")

    return Manifest(
        app_id=app_id,
        runtime=_as_str(_require(root, "runtime", ""), "runtime"),
        runtime_version=_as_version(_require(root, "runtime-version", ""), "runtime-version"),
        sdk=_as_str(_require(root, "sdk", ""), "sdk"),
        command=_as_str(_require(root, "command", ""), "command"),
        modules=modules,
        finish_args=_as_str_tuple(root.get("finish-args", []), "finish-args"),
        build_options=build_options,
        cleanup=_as_str_tuple(root.get("cleanup", []), "cleanup"),
        base_dir=base.as_posix(),
    )


def _load_document(path: Path) -> object:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return cast("object", yaml.safe_load(handle))
    except FileNotFoundError as exc:
        raise ManifestError("", f"manifest not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ManifestError("", f"{path.name}: invalid YAML/JSON ({exc})") from exc
    except UnicodeDecodeError as exc:
        raise ManifestError("", f"{path.name}: manifest is not valid UTF-8") from exc
    except OSError as exc:
        raise ManifestError("", f"cannot read manifest {path}: {exc.strerror or exc}") from exc


def _parse_build_options(value: object, path: str) -> ManifestBuildOptions:
    section = _expect_object(
        value, path, allowed=_BUILD_OPTIONS_KEYS, ignored=_BUILD_OPTIONS_IGNORED_KEYS
    )
    env_raw = section.get("env", {})
    env_obj = _expect_object(env_raw, _join(path, "env"), allowed=None)
    env = {key: _as_scalar_text(item, _join(path, f"env.{key}")) for key, item in env_obj.items()}

    options = ManifestBuildOptions(
        build_args=_as_str_tuple(section.get("build-args", []), _join(path, "build-args")),
        test_args=_as_str_tuple(section.get("test-args", []), _join(path, "test-args")),
        append_path=_as_search_path(section.get("append-path"), _join(path, "append-path")),
        prepend_path=_as_search_path(section.get("prepend-path"), _join(path, "prepend-path")),
        env=env,
    )
    if "prefix" in section:
        prefix = _as_str(section["prefix"], _join(path, "prefix"))
        if not prefix.startswith("/"):
            _fail(_join(path, "prefix"), "must be an absolute path")
        return ManifestBuildOptions(
            build_args=options.build_args,
            test_args=options.test_args,
            append_path=options.append_path,
            prepend_path=options.prepend_path,
            env=options.env,
            prefix=prefix,
        )
    return options


def _parse_module(value: object, path: str, base_dir: Path) -> Module:
    if isinstance(value, str):
        include_path = (base_dir / value).resolve()
        _LOGGER.debug("loading module include %s", include_path)
        try:
            value = _load_document(include_path)
        except ManifestError as exc:
            raise ManifestError(path, exc.detail) from exc
        base_dir = include_path.parent

    module_obj = _expect_object(value, path, allowed=_MODULE_KEYS, ignored=_MODULE_IGNORED_KEYS)
    if "modules" in module_obj:
        _fail(_join(path, "modules"), "nested modules are not supported; use depends-on")

    name = _as_str(_require(module_obj, "name", path), _join(path, "name"))
    kind = _as_kind(_require(module_obj, "buildsystem", path), _join(path, "buildsystem"))
    raw_options = _as_str_tuple(module_obj.get("config-opts", []), _join(path, "config-opts"))

    raw_sources = _as_list(module_obj.get("sources", []), _join(path, "sources"))
    sources = tuple(
        _parse_source(item, _join(path, f"sources[{index}]"), base_dir)
        for index, item in enumerate(raw_sources)
    )

    depends_on = _as_str_tuple(module_obj.get("depends-on", []), _join(path, "depends-on"))
    if len(set(depends_on)) != len(depends_on):
        _fail(_join(path, "depends-on"), "contains duplicate values")

    test_rule_raw = module_obj.get("test-rule")
    try:
        return Module(
            name=name,
            buildsystem=kind,
            options=parse_build_options(kind, raw_options),
            sources=sources,
            cleanup=_as_str_tuple(module_obj.get("cleanup", []), _join(path, "cleanup")),
            run_tests=_as_bool(module_obj.get("run-tests", False), _join(path, "run-tests")),
            depends_on=depends_on,
            build_commands=_as_str_tuple(
                module_obj.get("build-commands", []), _join(path, "build-commands")
            ),
            post_install=_as_str_tuple(
                module_obj.get("post-install", []), _join(path, "post-install")
            ),
            test_rule=(
                None if test_rule_raw is None else _as_str(test_rule_raw, _join(path, "test-rule"))
            ),
        )
    except ManifestError:
        raise
    except ValueError as exc:
        raise ManifestError(path, str(exc)) from exc


def _parse_source(value: object, path: str, base_dir: Path) -> SourceDescriptor:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    source_type = _as_str(_require(value, "type", path), _join(path, "type"))
    allowed = _SOURCE_KEYS.get(source_type)
    if allowed is None:
        _fail(_join(path, "type"), f"unsupported source type {source_type!r}")
    source = _expect_object(value, path, allowed=allowed)
    dest_raw = source.get("dest")
    dest = None if dest_raw is None else _as_str(dest_raw, _join(path, "dest"))

    try:
        if source_type == "archive":
            if "sha256" not in source:
                _fail(path, "archive sources must declare sha256")
            return ArchiveSource(
                url=_as_str(_require(source, "url", path), _join(path, "url")),
                sha256=_as_str(source["sha256"], _join(path, "sha256")),
                strip_components=_as_int(
                    source.get("strip-components", 1), _join(path, "strip-components")
                ),
                dest=dest,
            )
        if source_type == "git":
            if "commit" not in source:
                ref = source.get("branch", source.get("tag"))
                detail = f" (found mutable ref {ref!r})" if ref is not None else ""
                _fail(path, f"git sources must pin a commit{detail}")
            tag_raw = source.get("tag")
            return GitSource(
                url=_as_str(_require(source, "url", path), _join(path, "url")),
                commit=_as_str(source["commit"], _join(path, "commit")),
                tag=None if tag_raw is None else _as_str(tag_raw, _join(path, "tag")),
                dest=dest,
            )
        local_path = _as_str(_require(source, "path", path), _join(path, "path"))
        resolved = Path(local_path)
        if not resolved.is_absolute():
            resolved = base_dir / resolved
        return LocalSource(path=resolved.as_posix(), dest=dest)
    except ManifestError:
        raise
    except ValueError as exc:
        raise ManifestError(path, str(exc)) from exc


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ManifestError(path, message)


def _join(parent: str, key: str) -> str:
    return f"{parent}.{key}" if parent else key


def _require(payload: Mapping[str, object], key: str, path: str) -> object:
    if key not in payload:
        _fail(_join(path, key), "is required")
    return payload[key]


def _expect_object(
    value: object,
    path: str,
    *,
    allowed: frozenset[str] | None,
    ignored: frozenset[str] = frozenset(),
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path or "<root>", f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path or "<root>", f"object keys must be strings, got {type(key).__name__}")
        if allowed is not None and key not in allowed:
            if key in ignored or key.startswith("x-"):
                _LOGGER.debug("ignoring manifest key %s", _join(path, key))
                continue
            _fail(_join(path, key), "unknown key")
        parsed[key] = item
    return parsed


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    return normalized


def _as_version(value: object, path: str) -> str:
    # Unquoted YAML versions such as ``45`` or ``23.08`` decode as numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return _as_str(value, path)


def _as_scalar_text(value: object, path: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    _fail(path, f"expected scalar value, got {type(value).__name__}")


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    return value


def _as_list(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    items = _as_list(value, path)
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))


def _as_search_path(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part for part in value.split(":") if part)
    return _as_str_tuple(value, path)


def _as_kind(value: object, path: str) -> BuildSystemKind:
    text = _as_str(value, path)
    try:
        return BuildSystemKind(text)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in BuildSystemKind))
        _fail(path, f"invalid value {text!r}; expected one of: {allowed}")


__all__ = ["load_manifest", "parse_manifest"]
