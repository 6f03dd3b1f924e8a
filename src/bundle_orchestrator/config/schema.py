"""
bundle-orchestrator: configuration defaults and validation.

Validation collects every problem as a dotted field path plus a message
instead of stopping at the first one. Profiles are partial overlays and are
checked against the same field rules as the full document.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, Literal, TypedDict

from bundle_orchestrator.constants import (
    CACHE_DIR,
    CONFIG_SCHEMA_VERSION,
    IMAGE_DIR,
    LOG_DIR,
    WORKSPACES_DIR,
)
from bundle_orchestrator.domain.models import FailureMode, ImplicitOrder, TestFailurePolicy
from bundle_orchestrator.sandbox.network_policy import NetworkPolicyMode

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("offline", "ci")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "cache_dir"),
    ("paths", "image_dir"),
    ("observability", "log_dir"),
)

_SECTIONS: Final[tuple[str, ...]] = ("build", "network", "paths", "observability")
_PROFILE_NAME: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_-]*$")
_HOST_RULE: Final[re.Pattern[str]] = re.compile(r"^(\*\.)?[A-Za-z0-9.:_/-]+$")


class MetaConfig(TypedDict):
    schema_version: int


class BuildConfig(TypedDict):
    parallelism: int
    test_failure_policy: Literal["fatal", "advisory"]
    failure_mode: Literal["isolate", "halt"]
    implicit_order: Literal["chain", "hint"]
    retain_workspaces: bool
    command_timeout_seconds: float


class NetworkConfig(TypedDict):
    fetch_policy: Literal["deny", "allowlist", "permissive"]
    allowlist: list[str]
    timeout_seconds: float


class PathsConfig(TypedDict):
    workspace_root: str
    cache_dir: str
    image_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    build: dict[str, object]
    network: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class BundleConfig(TypedDict):
    meta: MetaConfig
    build: BuildConfig
    network: NetworkConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


# A zero parallelism means one slot per CPU; a zero command timeout means none.
DEFAULT_CONFIG: Final[BundleConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "build": {
        "parallelism": 0,
        "test_failure_policy": "fatal",
        "failure_mode": "isolate",
        "implicit_order": "chain",
        "retain_workspaces": False,
        "command_timeout_seconds": 0.0,
    },
    "network": {
        "fetch_policy": "allowlist",
        "allowlist": [],
        "timeout_seconds": 300.0,
    },
    "paths": {
        "workspace_root": str(WORKSPACES_DIR),
        "cache_dir": str(CACHE_DIR),
        "image_dir": str(IMAGE_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "offline": {"network": {"fetch_policy": "deny"}},
        "ci": {
            "build": {"test_failure_policy": "fatal", "failure_mode": "halt"},
            "observability": {"log_to_stdout": True},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Outcome of :func:`validate_config`; ``config`` is set only when there are no issues."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """One or more config fields are invalid; ``issues`` holds each of them."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


@dataclass(slots=True)
class _Issues:
    found: list[ConfigValidationIssue] = field(default_factory=list)

    def add(self, path: str, message: str) -> None:
        self.found.append(ConfigValidationIssue(path, message))


# A check returns the normalized value, or None after recording an issue.
_Check = Callable[[object, str, _Issues], Any]


def default_config() -> BundleConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain how to resolve a ``meta.schema_version`` mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade bundle.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade bundle-orchestrator"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``. Lists are replaced, never joined."""

    merged: dict[str, Any] = _clone(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _clone(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result."""

    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)

    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", "profiles section is required")]
        )
    overlay = profiles.get(name)
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    issues = _Issues()
    root = _object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(None, tuple(issues.found))

    _unknown_keys(root, {"meta", "profiles", *_SECTIONS}, "", issues)
    normalized: dict[str, Any] = {}
    for section in ("meta", *_SECTIONS):
        if section not in root:
            issues.add(section, "missing required field")
            continue
        body = _object(root[section], section, issues)
        if body is not None:
            normalized[section] = _section(section, body, section, issues, partial=False)
    if "profiles" in root:
        profiles = _object(root["profiles"], "profiles", issues)
        if profiles is not None:
            normalized["profiles"] = _profiles(profiles, issues)

    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in normalized.get("profiles", {}):
        issues.add("profiles", f"profile {selected!r} is not defined")

    if issues.found:
        return ConfigValidationResult(None, tuple(issues.found))
    return ConfigValidationResult(normalized, ())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Like :func:`validate_config` but raise ``ConfigValidationError`` on any issue."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _section(
    section: str, body: Mapping[str, object], path: str, issues: _Issues, *, partial: bool
) -> dict[str, Any]:
    checks = _FIELDS[section]
    _unknown_keys(body, set(checks), path, issues)
    out: dict[str, Any] = {}
    for key, check in checks.items():
        where = f"{path}.{key}"
        if key not in body:
            if not partial:
                issues.add(where, "missing required field")
            continue
        value = check(body[key], where, issues)
        if value is not None:
            out[key] = value
    return out


def _profiles(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        where = f"profiles.{name}"
        if not _PROFILE_NAME.fullmatch(name):
            issues.add(where, f"profile name must match {_PROFILE_NAME.pattern}")
            continue
        overlay = _object(payload[name], where, issues)
        if overlay is None:
            continue
        _unknown_keys(overlay, set(_SECTIONS), where, issues)
        checked: dict[str, Any] = {}
        for section in _SECTIONS:
            if section not in overlay:
                continue
            body = _object(overlay[section], f"{where}.{section}", issues)
            if body is not None:
                checked[section] = _section(
                    section, body, f"{where}.{section}", issues, partial=True
                )
        out[name] = checked
    return out


def _unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _Issues
) -> None:
    for key in sorted(set(payload) - allowed):
        issues.add(f"{path}.{key}" if path else key, "unknown field")


def _object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    if any(not isinstance(key, str) for key in value):
        issues.add(path, "object keys must be strings")
        return None
    return dict(value)


def _text(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    stripped = value.strip()
    if not stripped:
        issues.add(path, "must not be empty")
        return None
    if "\x00" in stripped:
        issues.add(path, "must not contain NUL bytes")
        return None
    return stripped


def _flag(value: object, path: str, issues: _Issues) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _integer(minimum: int) -> _Check:
    def check(value: object, path: str, issues: _Issues) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        return value

    return check


def _number(minimum: float, *, inclusive: bool = True) -> _Check:
    def check(value: object, path: str, issues: _Issues) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {type(value).__name__}")
            return None
        number = float(value)
        if not math.isfinite(number):
            issues.add(path, "must be finite")
            return None
        if number < minimum or (not inclusive and number == minimum):
            issues.add(path, f"must be {'>=' if inclusive else '>'} {minimum:g}")
            return None
        return number

    return check


def _choice(values: type[Enum] | tuple[str, ...], *, fold_upper: bool = False) -> _Check:
    allowed = tuple(values) if isinstance(values, tuple) else tuple(m.value for m in values)

    def check(value: object, path: str, issues: _Issues) -> str | None:
        if fold_upper and isinstance(value, str):
            value = value.upper()
        text = _text(value, path, issues)
        if text is None:
            return None
        if text not in allowed:
            expected = ", ".join(sorted(allowed))
            issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
            return None
        return text

    return check


def _hosts(value: object, path: str, issues: _Issues) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of hosts, got {type(value).__name__}")
        return None
    hosts: list[str] = []
    for index, item in enumerate(value):
        where = f"{path}[{index}]"
        rule = _text(item, where, issues)
        if rule is None:
            continue
        if not _HOST_RULE.fullmatch(rule):
            issues.add(where, f"invalid host rule {rule!r}")
            continue
        hosts.append(rule.lower())
    return hosts


def _schema_version(value: object, path: str, issues: _Issues) -> int | None:
    version = _integer(1)(value, path, issues)
    if version is not None and version != ConfigSchemaVersion:
        issues.add(path, migration_guidance(version))
    return version


_FIELDS: Final[dict[str, dict[str, _Check]]] = {
    "meta": {"schema_version": _schema_version},
    "build": {
        "parallelism": _integer(0),
        "test_failure_policy": _choice(TestFailurePolicy),
        "failure_mode": _choice(FailureMode),
        "implicit_order": _choice(ImplicitOrder),
        "retain_workspaces": _flag,
        "command_timeout_seconds": _number(0.0),
    },
    "network": {
        "fetch_policy": _choice(NetworkPolicyMode),
        "allowlist": _hosts,
        "timeout_seconds": _number(0.0, inclusive=False),
    },
    "paths": {key: _text for key in ("workspace_root", "cache_dir", "image_dir")},
    "observability": {
        "log_level": _choice(("DEBUG", "INFO", "WARNING", "ERROR"), fold_upper=True),
        "log_dir": _text,
        "log_to_stdout": _flag,
        "redact_secrets": _flag,
    },
}


def _clone(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _clone(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_clone(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "BundleConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
