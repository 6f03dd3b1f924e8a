"""
Sandbox policy resolution.

Three grant sets are computed from one manifest, independent of build order:

- ``runtime``: ``finish-args``, the set the final application is launched with
- ``build``: ``build-options.build-args`` plus environment, where
  ``build-options.env`` overrides any runtime or build-arg value for a key
- ``test``: ``build`` overlaid with ``build-options.test-args``

Within one declaration list a key may only be assigned one value unless an
``--unset-env=KEY`` sits between the two assignments. Every set is minimized:
filesystem grants covered by a broader grant of equal or stronger mode are
dropped, as are redundant X11 sockets.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import structlog

from bundle_orchestrator.domain.errors import ConflictingGrant
from bundle_orchestrator.domain.models import Manifest
from bundle_orchestrator.sandbox.grants import (
    EnvToken,
    FilesystemToken,
    GrantToken,
    SandboxGrant,
    SocketToken,
    UnsetEnvToken,
    parse_declaration,
)

logger = structlog.get_logger(__name__)

# Never exposed by the "host" filesystem grant.
_HOST_RESERVED = (
    "/app",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/lib",
    "/lib32",
    "/lib64",
    "/proc",
    "/root",
    "/run",
    "/sbin",
    "/sys",
    "/tmp",
    "/usr",
    "/var",
)


@dataclass(frozen=True, slots=True)
class ResolvedPolicy:
    build: SandboxGrant
    test: SandboxGrant
    runtime: SandboxGrant

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "build": self.build.to_args(),
            "test": self.test.to_args(),
            "runtime": self.runtime.to_args(),
        }


def resolve_policy(manifest: Manifest) -> ResolvedPolicy:
    """Compute build, test and runtime grant sets for ``manifest``."""

    runtime = resolve_declarations(manifest.finish_args, context="runtime", path="finish-args")
    build_args = resolve_declarations(
        manifest.build_options.build_args,
        context="build",
        path="build-options.build-args",
    )
    test_args = resolve_declarations(
        manifest.build_options.test_args,
        context="test",
        path="build-options.test-args",
    )

    runtime_env = SandboxGrant.of(
        token for token in runtime.tokens if isinstance(token, (EnvToken, UnsetEnvToken))
    )
    build_env = SandboxGrant.of(
        EnvToken(key, value) for key, value in manifest.build_options.env.items()
    )
    build = minimize(runtime_env.overlay(build_args).overlay(build_env))
    test = minimize(build.overlay(test_args))

    logger.debug(
        "sandbox_policy_resolved",
        app_id=manifest.app_id,
        build=len(build),
        test=len(test),
        runtime=len(runtime),
    )
    return ResolvedPolicy(build=build, test=test, runtime=runtime)


def resolve_declarations(
    declarations: Sequence[str],
    *,
    context: str,
    path: str = "",
) -> SandboxGrant:
    """Parse one declaration list into a minimized grant set.

    Raises ``ManifestError`` for unknown flags and ``ConflictingGrant`` when
    a key is assigned two different values without an intervening unset.
    """

    tokens: set[GrantToken] = set()
    env: dict[str, str] = {}
    unset: set[str] = set()

    for index, declaration in enumerate(declarations):
        token = parse_declaration(declaration, path=f"{path}[{index}]" if path else "")
        if isinstance(token, EnvToken):
            previous = env.get(token.key)
            if previous is not None and previous != token.value:
                raise ConflictingGrant(token.key, (previous, token.value), context=context)
            env[token.key] = token.value
            unset.discard(token.key)
        elif isinstance(token, UnsetEnvToken):
            env.pop(token.key, None)
            unset.add(token.key)
        else:
            tokens.add(token)

    tokens.update(EnvToken(key, value) for key, value in env.items())
    tokens.update(UnsetEnvToken(key) for key in unset)
    return minimize(SandboxGrant.of(tokens))


def minimize(grant: SandboxGrant) -> SandboxGrant:
    """Drop tokens subsumed by broader tokens in the same set."""

    filesystems = [token for token in grant.tokens if isinstance(token, FilesystemToken)]
    dropped: set[GrantToken] = set()
    for token in filesystems:
        for other in filesystems:
            if other is token or other == token:
                continue
            if other.mode.rank >= token.mode.rank and covers(other.path, token.path):
                dropped.add(token)
                break

    sockets = {token.name for token in grant.tokens if isinstance(token, SocketToken)}
    if "fallback-x11" in sockets and "x11" in sockets:
        dropped.add(SocketToken("fallback-x11"))

    if not dropped:
        return grant
    logger.debug("sandbox_grants_subsumed", dropped=sorted(token.to_arg() for token in dropped))
    return SandboxGrant(grant.tokens - dropped)


def covers(broader: str, narrower: str) -> bool:
    """Whether filesystem location ``broader`` contains ``narrower``.

    ``host`` exposes home and the host tree minus the system directories
    the sandbox reserves; ``host-etc``, ``host-os`` and the runtime dir are
    separate grants. ``home`` holds ``~`` paths and the xdg user dirs, but
    not ``xdg-run``.
    """

    if broader == narrower:
        return True
    if broader == "host":
        if narrower.startswith("/"):
            return narrower != "/" and not _is_reserved(narrower)
        return narrower == "home" or _in_home(narrower)
    if broader == "home":
        return _in_home(narrower)
    if broader == "/":
        return narrower.startswith("/")
    return narrower.startswith(f"{broader}/")


def _in_home(path: str) -> bool:
    if path == "~" or path.startswith("~/"):
        return True
    return path.startswith("xdg-") and not _is_runtime_dir(path)


def _is_runtime_dir(path: str) -> bool:
    return path == "xdg-run" or path.startswith("xdg-run/")


def _is_reserved(path: str) -> bool:
    return any(path == root or path.startswith(f"{root}/") for root in _HOST_RESERVED)


def environment_for(grant: SandboxGrant, base: Mapping[str, str]) -> dict[str, str]:
    """Apply the grant's environment tokens on top of ``base``."""

    env = dict(base)
    for key in grant.unset_env:
        env.pop(key, None)
    env.update(grant.env)
    return env


__all__ = [
    "ResolvedPolicy",
    "covers",
    "environment_for",
    "minimize",
    "resolve_declarations",
    "resolve_policy",
]
