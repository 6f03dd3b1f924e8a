"""
bundle-orchestrator: effective runtime configuration.

Layers, lowest first: built-in defaults, the TOML file (``bundle.toml`` unless
``--config`` names another), the selected profile overlay, ``BUNDLE_*``
environment variables, then ``--set`` overrides from the command line. Relative
paths are anchored at the directory holding the resolved config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from bundle_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "bundle.toml"
ENV_PREFIX: Final[str] = "BUNDLE_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Sections that never take environment overrides.
_ENV_EXCLUDED: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """The config file could not be read or an override could not be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Build the validated effective config.

    ``cli_overrides`` maps dotted keys (``build.parallelism``) to already-typed
    values; the special key ``profile`` selects an overlay when ``profile`` is
    not given. ``environ`` defaults to ``os.environ``.
    """

    explicit = config_path is not None
    source = (
        Path(config_path).expanduser().resolve()
        if explicit
        else (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    )
    env = dict(os.environ) if environ is None else dict(environ)
    overrides = dict(cli_overrides or {})
    profile_name = _select_profile(profile, overrides, env)

    # Validate file content before any overlay so errors point at the file.
    effective = assert_valid_config(merge_config(default_config(), _read_toml(source, explicit)))
    if profile_name is not None:
        effective = apply_profile_overlay(effective, profile_name)
    effective = merge_config(effective, _env_layer(effective, env))
    effective = merge_config(effective, _dotted_layer(overrides))
    effective = assert_valid_config(effective, active_profile=profile_name)

    return assert_valid_config(
        normalize_paths(effective, base_dir=source.parent), active_profile=profile_name
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Anchor every path field, including those inside profile overlays, at ``base_dir``."""

    result = merge_config({}, config)
    targets: list[tuple[str, ...]] = list(PATH_FIELDS)
    profiles = result.get("profiles")
    if isinstance(profiles, Mapping):
        for name, overlay in sorted(profiles.items()):
            if isinstance(overlay, Mapping):
                targets.extend(
                    ("profiles", name, *field) for field in PATH_FIELDS if field[0] in overlay
                )

    for dotted in targets:
        *parents, leaf = dotted
        node: Any = result
        for part in parents:
            node = node.get(part) if isinstance(node, Mapping) else None
        if isinstance(node, dict) and isinstance(node.get(leaf), str):
            node[leaf] = _anchor(node[leaf], base_dir)
    return result


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
    if candidate is None:
        candidate = env.get(f"{ENV_PREFIX}PROFILE")
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    return candidate.strip() or None


def _leaves(
    node: Mapping[str, object], trail: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*trail, key))
        else:
            yield (*trail, key), value


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``BUNDLE_<SECTION>_<FIELD>`` values, typed after the current value."""

    layer: dict[str, Any] = {}
    for dotted, current in _leaves(config):
        if dotted[0] in _ENV_EXCLUDED:
            continue
        name = ENV_PREFIX + "_".join(part.upper() for part in dotted)
        raw = env.get(name)
        if raw is None:
            continue
        coerce = _coercer_for(current)
        if coerce is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(dotted)} {exc}") from exc
        _assign(layer, dotted, value)
    return layer


def _coercer_for(current: object) -> Callable[[str], object] | None:
    # bool before int: bool is an int subclass.
    if isinstance(current, bool):
        return _as_bool
    if isinstance(current, int):
        return _typed(int, "must be an integer")
    if isinstance(current, float):
        return _typed(float, "must be a number")
    if isinstance(current, str):
        return str
    if isinstance(current, list):
        return lambda raw: [item.strip() for item in raw.split(",") if item.strip()]
    return None


def _typed(kind: Callable[[str], object], message: str) -> Callable[[str], object]:
    def convert(raw: str) -> object:
        try:
            return kind(raw)
        except ValueError:
            raise ValueError(message) from None

    return convert


def _as_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _dotted_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in sorted(overrides.items()):
        if key == "profile":
            continue
        dotted = tuple(part for part in key.split(".") if part)
        if not dotted:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, dotted, value)
    return layer


def _assign(target: dict[str, Any], dotted: tuple[str, ...], value: object) -> None:
    *parents, leaf = dotted
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
