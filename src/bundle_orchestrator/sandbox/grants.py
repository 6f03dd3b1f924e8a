"""
Capability tokens and grant sets.

Declarations use the flatpak ``finish-args`` syntax. Every token renders back to
exactly one canonical declaration, so ``parse_declaration(token.to_arg())``
round-trips.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Final

from bundle_orchestrator.domain.errors import ConflictingGrant, ManifestError

KNOWN_SOCKETS: Final[frozenset[str]] = frozenset(
    {
        "x11",
        "wayland",
        "fallback-x11",
        "pulseaudio",
        "system-bus",
        "session-bus",
        "ssh-auth",
        "pcsc",
        "cups",
        "gpg-agent",
        "inherit-wayland-socket",
    }
)
KNOWN_DEVICES: Final[frozenset[str]] = frozenset({"dri", "all", "kvm", "shm", "input", "usb"})
KNOWN_SHARES: Final[frozenset[str]] = frozenset({"network", "ipc"})


class FilesystemMode(StrEnum):
    READ_ONLY = "ro"
    READ_WRITE = "rw"
    CREATE = "create"

    @property
    def rank(self) -> int:
        return _MODE_RANK[self]


_MODE_RANK: Final[Mapping[FilesystemMode, int]] = {
    FilesystemMode.READ_ONLY: 0,
    FilesystemMode.READ_WRITE: 1,
    FilesystemMode.CREATE: 2,
}


@dataclass(frozen=True, slots=True, order=True)
class ShareToken:
    name: str

    def to_arg(self) -> str:
        return f"--share={self.name}"


@dataclass(frozen=True, slots=True, order=True)
class SocketToken:
    name: str

    def to_arg(self) -> str:
        return f"--socket={self.name}"


@dataclass(frozen=True, slots=True, order=True)
class DeviceToken:
    name: str

    def to_arg(self) -> str:
        return f"--device={self.name}"


@dataclass(frozen=True, slots=True, order=True)
class FilesystemToken:
    path: str
    mode: FilesystemMode = FilesystemMode.READ_WRITE

    def to_arg(self) -> str:
        if self.mode is FilesystemMode.READ_WRITE:
            return f"--filesystem={self.path}"
        return f"--filesystem={self.path}:{self.mode.value}"


@dataclass(frozen=True, slots=True, order=True)
class BusToken:
    """D-Bus name access (``--talk-name``, ``--own-name``, ``--system-talk-name``...)."""

    flag: str
    name: str

    def to_arg(self) -> str:
        return f"--{self.flag}={self.name}"


@dataclass(frozen=True, slots=True, order=True)
class EnvToken:
    key: str
    value: str

    def to_arg(self) -> str:
        return f"--env={self.key}={self.value}"


@dataclass(frozen=True, slots=True, order=True)
class UnsetEnvToken:
    key: str

    def to_arg(self) -> str:
        return f"--unset-env={self.key}"


GrantToken = (
    ShareToken | SocketToken | DeviceToken | FilesystemToken | BusToken | EnvToken | UnsetEnvToken
)

_KIND_ORDER: Final[Mapping[type, int]] = {
    ShareToken: 0,
    SocketToken: 1,
    DeviceToken: 2,
    FilesystemToken: 3,
    BusToken: 4,
    EnvToken: 5,
    UnsetEnvToken: 6,
}
_BUS_FLAGS: Final[frozenset[str]] = frozenset(
    {"talk-name", "own-name", "system-talk-name", "system-own-name"}
)


def token_sort_key(token: GrantToken) -> tuple[int, str]:
    return (_KIND_ORDER[type(token)], token.to_arg())


@dataclass(frozen=True, slots=True)
class SandboxGrant:
    """Immutable set of capability tokens.

    Holds at most one value per environment key. ``union`` is idempotent and
    refuses to merge two different values for the same key; ``overlay`` lets
    the other grant's environment win.
    """

    tokens: frozenset[GrantToken] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        seen: dict[str, str] = {}
        for token in self.tokens:
            if isinstance(token, EnvToken):
                previous = seen.setdefault(token.key, token.value)
                if previous != token.value:
                    raise ConflictingGrant(
                        token.key, sorted((previous, token.value)), context="grant"
                    )

    @classmethod
    def of(cls, tokens: Iterable[GrantToken]) -> SandboxGrant:
        return cls(frozenset(tokens))

    def __iter__(self) -> Iterator[GrantToken]:
        return iter(sorted(self.tokens, key=token_sort_key))

    def __len__(self) -> int:
        return len(self.tokens)

    def __contains__(self, token: object) -> bool:
        return token in self.tokens

    def __or__(self, other: SandboxGrant) -> SandboxGrant:
        return self.union(other)

    def union(self, other: SandboxGrant) -> SandboxGrant:
        if other.tokens <= self.tokens:
            return self
        return SandboxGrant(self.tokens | other.tokens)

    def overlay(self, other: SandboxGrant) -> SandboxGrant:
        """Union where ``other`` wins for every environment key it sets or unsets."""

        overridden = {
            token.key for token in other.tokens if isinstance(token, (EnvToken, UnsetEnvToken))
        }
        kept = {
            token
            for token in self.tokens
            if not (isinstance(token, (EnvToken, UnsetEnvToken)) and token.key in overridden)
        }
        return SandboxGrant(frozenset(kept) | other.tokens)

    @property
    def env(self) -> dict[str, str]:
        return {token.key: token.value for token in self if isinstance(token, EnvToken)}

    @property
    def unset_env(self) -> tuple[str, ...]:
        return tuple(token.key for token in self if isinstance(token, UnsetEnvToken))

    @property
    def filesystems(self) -> tuple[FilesystemToken, ...]:
        return tuple(token for token in self if isinstance(token, FilesystemToken))

    @property
    def sockets(self) -> tuple[str, ...]:
        return tuple(token.name for token in self if isinstance(token, SocketToken))

    @property
    def devices(self) -> tuple[str, ...]:
        return tuple(token.name for token in self if isinstance(token, DeviceToken))

    @property
    def shares(self) -> tuple[str, ...]:
        return tuple(token.name for token in self if isinstance(token, ShareToken))

    @property
    def allows_network(self) -> bool:
        return ShareToken("network") in self.tokens

    def to_args(self) -> list[str]:
        """Canonical, sorted declarations."""
        return [token.to_arg() for token in self]


def parse_declaration(text: str, *, path: str = "") -> GrantToken:
    """Parse one ``finish-args`` style declaration into a token."""

    raw = text.strip()
    flag, sep, value = raw.partition("=")
    if not raw.startswith("--") or not sep:
        raise ManifestError(path, f"unrecognized grant declaration {text!r}")
    name = flag[2:]
    if not value:
        raise ManifestError(path, f"grant declaration {text!r} has an empty value")

    if name == "socket":
        return SocketToken(_checked(value, KNOWN_SOCKETS, "socket", path))
    if name == "device":
        return DeviceToken(_checked(value, KNOWN_DEVICES, "device", path))
    if name == "share":
        return ShareToken(_checked(value, KNOWN_SHARES, "share", path))
    if name == "filesystem":
        return _parse_filesystem(value, path)
    if name == "env":
        key, has_value, env_value = value.partition("=")
        if not has_value or not key:
            raise ManifestError(path, f"--env expects KEY=VALUE, got {value!r}")
        return EnvToken(key, env_value)
    if name == "unset-env":
        if "=" in value:
            raise ManifestError(path, f"--unset-env expects a bare KEY, got {value!r}")
        return UnsetEnvToken(value)
    if name in _BUS_FLAGS:
        return BusToken(name, value)
    raise ManifestError(path, f"unknown grant flag {flag!r}")


def _checked(value: str, known: frozenset[str], kind: str, path: str) -> str:
    if value not in known:
        allowed = ", ".join(sorted(known))
        raise ManifestError(path, f"unknown {kind} {value!r}; expected one of: {allowed}")
    return value


def _parse_filesystem(value: str, path: str) -> FilesystemToken:
    location, _, suffix = value.rpartition(":")
    mode = FilesystemMode.READ_WRITE
    if location and suffix in {item.value for item in FilesystemMode}:
        mode = FilesystemMode(suffix)
    else:
        location = value
    if location != "/":
        location = location.rstrip("/")
    if not location:
        raise ManifestError(path, f"--filesystem has an empty path in {value!r}")
    return FilesystemToken(location, mode)


__all__ = [
    "KNOWN_DEVICES",
    "KNOWN_SHARES",
    "KNOWN_SOCKETS",
    "BusToken",
    "DeviceToken",
    "EnvToken",
    "FilesystemMode",
    "FilesystemToken",
    "GrantToken",
    "SandboxGrant",
    "ShareToken",
    "SocketToken",
    "UnsetEnvToken",
    "parse_declaration",
    "token_sort_key",
]
