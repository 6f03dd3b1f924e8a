"""Build/test/runtime grant resolution and minimization."""

from __future__ import annotations

from typing import Any

import pytest
from hypothesis import given
from hypothesis import strategies as st

from bundle_orchestrator.domain.errors import ConflictingGrant
from bundle_orchestrator.manifest.parser import parse_manifest
from bundle_orchestrator.sandbox.grants import (
    FilesystemMode,
    FilesystemToken,
    SandboxGrant,
    SocketToken,
    parse_declaration,
)
from bundle_orchestrator.sandbox.policy_resolver import (
    covers,
    environment_for,
    minimize,
    resolve_declarations,
    resolve_policy,
)


def _manifest(**top_level: Any) -> Any:
    return parse_manifest(
        {
            "app-id": "org.example.App",
            "runtime": "org.example.Platform",
            "runtime-version": "1",
            "sdk": "org.example.Sdk",
            "command": "app",
            **top_level,
            "modules": [{"name": "app", "buildsystem": "meson"}],
        }
    )


def test_runtime_grants_come_from_finish_args() -> None:
    policy = resolve_policy(
        _manifest(**{"finish-args": ["--socket=wayland", "--share=ipc", "--env=A=1"]})
    )

    assert policy.runtime.to_args() == ["--share=ipc", "--socket=wayland", "--env=A=1"]
    assert policy.build.to_args() == ["--env=A=1"]


def test_build_env_overrides_runtime_and_build_args() -> None:
    policy = resolve_policy(
        _manifest(
            **{
                "finish-args": ["--env=MODE=runtime", "--env=KEEP=yes"],
                "build-options": {
                    "build-args": ["--share=network", "--env=MODE=build-arg"],
                    "env": {"MODE": "env"},
                },
            }
        )
    )

    assert policy.build.env == {"KEEP": "yes", "MODE": "env"}
    assert policy.build.allows_network
    assert policy.runtime.env == {"KEEP": "yes", "MODE": "runtime"}
    assert not policy.runtime.allows_network


def test_test_grants_overlay_build_grants() -> None:
    policy = resolve_policy(
        _manifest(
            **{
                "build-options": {
                    "build-args": ["--env=CHECK=0", "--filesystem=/srv"],
                    "test-args": ["--env=CHECK=1", "--device=dri"],
                }
            }
        )
    )

    assert policy.build.env == {"CHECK": "0"}
    assert policy.test.env == {"CHECK": "1"}
    assert policy.test.devices == ("dri",)
    assert FilesystemToken("/srv") in policy.test


def test_conflicting_assignments_in_one_list_are_rejected() -> None:
    with pytest.raises(ConflictingGrant) as excinfo:
        resolve_declarations(["--env=A=1", "--env=A=2"], context="runtime")

    assert excinfo.value.context == "runtime"
    assert excinfo.value.values == ("1", "2")


def test_unset_between_assignments_allows_reassignment() -> None:
    grant = resolve_declarations(["--env=A=1", "--unset-env=A", "--env=A=2"], context="build")

    assert grant.env == {"A": "2"}
    assert grant.unset_env == ()


def test_repeating_the_same_value_is_not_a_conflict() -> None:
    grant = resolve_declarations(["--env=A=1", "--env=A=1"], context="runtime")

    assert grant.env == {"A": "1"}


def test_conflicts_in_finish_args_surface_from_resolve_policy() -> None:
    with pytest.raises(ConflictingGrant):
        resolve_policy(_manifest(**{"finish-args": ["--env=A=1", "--env=A=2"]}))


def test_minimize_drops_covered_filesystems() -> None:
    grant = resolve_declarations(
        [
            "--filesystem=home",
            "--filesystem=xdg-music:ro",
            "--filesystem=~/Games",
            "--filesystem=/opt/tools:ro",
            "--filesystem=/opt/tools/bin:create",
        ],
        context="runtime",
    )

    assert grant.to_args() == [
        "--filesystem=/opt/tools/bin:create",
        "--filesystem=/opt/tools:ro",
        "--filesystem=home",
    ]


def test_host_keeps_grants_it_does_not_expose() -> None:
    grant = resolve_declarations(
        [
            "--filesystem=host",
            "--filesystem=host-etc:ro",
            "--filesystem=home",
            "--filesystem=xdg-run/pipewire-0",
            "--filesystem=/etc/fonts:ro",
            "--filesystem=/media",
        ],
        context="runtime",
    )

    assert grant.to_args() == [
        "--filesystem=/etc/fonts:ro",
        "--filesystem=host",
        "--filesystem=host-etc:ro",
        "--filesystem=xdg-run/pipewire-0",
    ]


def test_weaker_mode_does_not_cover_stronger_grant() -> None:
    grant = minimize(
        SandboxGrant.of(
            [
                FilesystemToken("/data", FilesystemMode.READ_ONLY),
                FilesystemToken("/data/out", FilesystemMode.READ_WRITE),
            ]
        )
    )

    assert len(grant) == 2


@pytest.mark.parametrize(
    ("sockets", "expected"),
    [
        (["x11", "fallback-x11", "wayland"], ("wayland", "x11")),
        (["fallback-x11"], ("fallback-x11",)),
        (["wayland", "fallback-x11"], ("fallback-x11", "wayland")),
    ],
)
def test_minimize_x11_fallback(sockets: list[str], expected: tuple[str, ...]) -> None:
    grant = minimize(SandboxGrant.of(SocketToken(name) for name in sockets))

    assert grant.sockets == expected


@pytest.mark.parametrize(
    ("broader", "narrower", "expected"),
    [
        ("host", "/etc", False),
        ("host", "/", False),
        ("host", "/opt/tools", True),
        ("host", "~/Music", True),
        ("host", "host-etc", False),
        ("host", "host-os", False),
        ("host", "xdg-run/pipewire-0", False),
        ("home", "~/Music", True),
        ("home", "xdg-documents", True),
        ("home", "/etc", False),
        ("home", "xdg-run/pipewire-0", False),
        ("home", "~", True),
        ("/", "/usr", True),
        ("/usr", "/usr/share", True),
        ("/usr", "/usrlocal", False),
    ],
)
def test_covers(broader: str, narrower: str, expected: bool) -> None:
    assert covers(broader, narrower) is expected


def test_environment_for_applies_unsets_then_values() -> None:
    grant = resolve_declarations(["--unset-env=SECRET", "--env=LANG=C"], context="build")

    env = environment_for(grant, {"SECRET": "x", "PATH": "/usr/bin", "LANG": "fr_FR"})

    assert env == {"PATH": "/usr/bin", "LANG": "C"}


_declarations = st.lists(
    st.one_of(
        st.sampled_from(["--share=network", "--share=ipc", "--socket=x11", "--socket=wayland"]),
        st.sampled_from(["--socket=fallback-x11", "--device=dri", "--unset-env=TMP"]),
        st.builds(
            lambda path, mode: f"--filesystem={path}{mode}",
            st.sampled_from(
                ["home", "host", "/", "/etc", "/opt", "/opt/a", "~/x", "xdg-run/app", "host-etc"]
            ),
            st.sampled_from(["", ":ro", ":create"]),
        ),
    ),
    max_size=12,
)


@given(_declarations)
def test_resolution_is_idempotent(declarations: list[str]) -> None:
    grant = resolve_declarations(declarations, context="runtime")

    assert minimize(grant) == grant
    assert resolve_declarations(grant.to_args(), context="runtime") == grant
    assert grant | grant == grant


@given(_declarations)
def test_minimization_never_loses_filesystem_access(declarations: list[str]) -> None:
    declared = resolve_declarations(declarations, context="runtime")
    requested = [parse_declaration(item) for item in declarations]

    for wanted in requested:
        if not isinstance(wanted, FilesystemToken):
            continue
        assert any(
            kept.mode.rank >= wanted.mode.rank and covers(kept.path, wanted.path)
            for kept in declared.filesystems
        ), wanted
