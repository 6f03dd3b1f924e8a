from __future__ import annotations

import pytest

from bundle_orchestrator.domain.errors import ConflictingGrant, ManifestError
from bundle_orchestrator.sandbox.grants import (
    BusToken,
    DeviceToken,
    EnvToken,
    FilesystemMode,
    FilesystemToken,
    SandboxGrant,
    ShareToken,
    SocketToken,
    UnsetEnvToken,
    parse_declaration,
)


@pytest.mark.parametrize(
    ("declaration", "token"),
    [
        ("--share=network", ShareToken("network")),
        ("--socket=wayland", SocketToken("wayland")),
        ("--device=dri", DeviceToken("dri")),
        ("--filesystem=home", FilesystemToken("home", FilesystemMode.READ_WRITE)),
        (
            "--filesystem=xdg-download:ro",
            FilesystemToken("xdg-download", FilesystemMode.READ_ONLY),
        ),
        (
            "--filesystem=~/.config/app/:create",
            FilesystemToken("~/.config/app", FilesystemMode.CREATE),
        ),
        (
            "--talk-name=org.freedesktop.Notifications",
            BusToken("talk-name", "org.freedesktop.Notifications"),
        ),
        ("--system-own-name=org.example.Svc", BusToken("system-own-name", "org.example.Svc")),
        ("--env=GTK_THEME=Adwaita:dark", EnvToken("GTK_THEME", "Adwaita:dark")),
        ("--env=EMPTY=", EnvToken("EMPTY", "")),
        ("--unset-env=LD_PRELOAD", UnsetEnvToken("LD_PRELOAD")),
    ],
)
def test_declarations_parse_and_render_canonically(declaration: str, token: object) -> None:
    parsed = parse_declaration(declaration)

    assert parsed == token
    assert parse_declaration(parsed.to_arg()) == parsed


@pytest.mark.parametrize(
    ("declaration", "message"),
    [
        ("share=network", "unrecognized grant declaration"),
        ("--socket=", "empty value"),
        ("--socket=telepathy", "unknown socket"),
        ("--device=gpu", "unknown device"),
        ("--share=bluetooth", "unknown share"),
        ("--env=NOVALUE", "KEY=VALUE"),
        ("--unset-env=A=B", "bare KEY"),
        ("--allow=devel", "unknown grant flag"),
    ],
)
def test_invalid_declarations(declaration: str, message: str) -> None:
    with pytest.raises(ManifestError, match=message) as excinfo:
        parse_declaration(declaration, path="finish-args[0]")

    assert excinfo.value.path == "finish-args[0]"


def test_union_is_idempotent_and_commutative() -> None:
    left = SandboxGrant.of([ShareToken("ipc"), SocketToken("x11")])
    right = SandboxGrant.of([SocketToken("x11"), DeviceToken("dri")])

    assert left | left is left
    assert left | right == right | left
    assert (left | right).to_args() == ["--share=ipc", "--socket=x11", "--device=dri"]


def test_union_refuses_two_values_for_one_key() -> None:
    left = SandboxGrant.of([EnvToken("LANG", "C")])
    right = SandboxGrant.of([EnvToken("LANG", "en_US.UTF-8")])

    with pytest.raises(ConflictingGrant) as excinfo:
        left.union(right)

    assert excinfo.value.key == "LANG"
    assert excinfo.value.values == ("C", "en_US.UTF-8")


def test_overlay_lets_later_environment_win() -> None:
    base = SandboxGrant.of([EnvToken("LANG", "C"), UnsetEnvToken("DEBUG"), ShareToken("ipc")])
    top = SandboxGrant.of([EnvToken("LANG", "en_US.UTF-8"), EnvToken("DEBUG", "1")])

    merged = base.overlay(top)

    assert merged.env == {"DEBUG": "1", "LANG": "en_US.UTF-8"}
    assert merged.unset_env == ()
    assert merged.shares == ("ipc",)


def test_accessors_and_network_flag() -> None:
    grant = SandboxGrant.of(
        [
            ShareToken("network"),
            SocketToken("pulseaudio"),
            DeviceToken("all"),
            FilesystemToken("/srv/data", FilesystemMode.READ_ONLY),
        ]
    )

    assert grant.allows_network
    assert grant.sockets == ("pulseaudio",)
    assert grant.devices == ("all",)
    assert grant.filesystems == (FilesystemToken("/srv/data", FilesystemMode.READ_ONLY),)
    assert not SandboxGrant().allows_network
    assert len(SandboxGrant()) == 0
