from __future__ import annotations

import pytest

from bundle_orchestrator.manifest.parser import parse_manifest
from bundle_orchestrator.sandbox.network_policy import (
    NetworkDecision,
    NetworkPolicy,
    NetworkPolicyMode,
    NetworkPolicyViolationError,
    source_host,
)


def test_allowlist_mode_matches_exact_wildcard_and_network_rules() -> None:
    decisions: list[NetworkDecision] = []
    policy = NetworkPolicy(
        mode=NetworkPolicyMode.ALLOWLIST,
        allowlist=("download.gnome.org", "*.freedesktop.org", "10.0.0.0/8"),
        decision_logger=decisions.append,
    )

    exact = policy.evaluate("https://download.gnome.org/sources/glib/glib.tar.xz")
    wildcard = policy.evaluate("https://gitlab.freedesktop.org/xorg/lib.git")
    address = policy.evaluate("http://10.2.3.4/mirror/pkg.tar.gz")
    denied = policy.evaluate("https://example.com/pkg.tar.gz", context={"module": "pkg"})

    assert exact.allowed and exact.matched_rule == "download.gnome.org"
    assert wildcard.allowed and wildcard.matched_rule == "*.freedesktop.org"
    assert address.allowed and address.matched_rule == "10.0.0.0/8"
    assert not denied.allowed
    assert denied.matched_rule is None
    assert denied.context == {"module": "pkg"}
    assert "not in allowlist" in denied.reason
    assert len(decisions) == 4


def test_deny_mode_refuses_even_allowlisted_hosts() -> None:
    policy = NetworkPolicy(mode="deny", allowlist=("download.gnome.org",))

    with pytest.raises(NetworkPolicyViolationError) as excinfo:
        policy.enforce("https://download.gnome.org/x.tar.xz")

    assert excinfo.value.decision.mode is NetworkPolicyMode.DENY
    assert "denied by policy mode" in str(excinfo.value)


def test_permissive_mode_allows_everything() -> None:
    policy = NetworkPolicy(mode=NetworkPolicyMode.PERMISSIVE)

    decision = policy.enforce("https://anything.example/a.zip")

    assert decision.allowed
    assert decision.reason == "network access allowed in permissive mode"


def test_for_manifest_allows_declared_source_hosts() -> None:
    manifest = parse_manifest(
        {
            "app-id": "org.example.App",
            "runtime": "r",
            "runtime-version": "1",
            "sdk": "s",
            "command": "app",
            "modules": [
                {
                    "name": "lib",
                    "buildsystem": "meson",
                    "sources": [
                        {
                            "type": "archive",
                            "url": "https://Download.Example.org/lib.tar.xz",
                            "sha256": "1" * 64,
                        },
                        {"type": "git", "url": "git@git.example.net:lib.git", "commit": "2" * 40},
                        {"type": "dir", "path": "/src/local"},
                    ],
                }
            ],
        }
    )

    policy = NetworkPolicy.for_manifest(
        manifest, mode="allowlist", extra_allowlist=["mirror.example.com"]
    )

    assert policy.allowlist == ("download.example.org", "git.example.net", "mirror.example.com")
    assert policy.evaluate("ssh://git@git.example.net/lib.git").allowed
    assert not policy.evaluate("https://other.example.org/").allowed


@pytest.mark.parametrize(
    ("url", "host"),
    [
        ("https://Example.ORG:8443/a.tar", "example.org"),
        ("git@github.com:owner/repo.git", "github.com"),
        ("file:///srv/mirror/a.tar", None),
        ("/srv/mirror/a.tar", None),
    ],
)
def test_source_host(url: str, host: str | None) -> None:
    assert source_host(url) == host


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported network policy mode"):
        NetworkPolicy(mode="open")


@pytest.mark.parametrize("rule", ["", "*.", "bad host"])
def test_invalid_allowlist_rules(rule: str) -> None:
    with pytest.raises(ValueError):
        NetworkPolicy(mode="allowlist", allowlist=[rule])
