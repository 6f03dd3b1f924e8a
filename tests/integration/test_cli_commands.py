"""
bundle-orchestrator: CLI command contracts

Purpose
- Exercise ``bundle validate|plan|grants|config|build`` in-process through
  ``cli_entrypoint`` and check exit codes and JSON payloads.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from bundle_orchestrator.main import ExitCode, cli_entrypoint


@pytest.fixture(autouse=True)
def _clean_bundle_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("BUNDLE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "bundle.toml"
    path.write_text("[build]\nparallelism = 2\n", encoding="utf-8")
    return path


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, Any, str]:
    code = cli_entrypoint(list(argv))
    captured = capsys.readouterr()
    payload = json.loads(captured.out) if "--json" in argv and captured.out.strip() else None
    return code, payload, captured.err


def test_validate_json_reports_manifest_summary(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest([module_spec("zlib"), module_spec("app")])

    code, payload, _ = _run(
        capsys, "validate", str(manifest), "--config", str(config_file), "--json"
    )

    assert code == ExitCode.SUCCESS
    assert payload["command"] == "validate"
    assert payload["valid"] is True
    assert payload["app_id"] == "org.example.App"
    assert payload["runtime"] == "org.example.Platform/24.08"
    assert payload["modules"] == 2
    assert payload["graph"]["order"] == ["zlib", "app"]


def test_plan_json_follows_explicit_dependencies(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest(
        [
            module_spec("app", **{"depends-on": ["libfoo", "zlib"]}),
            module_spec("libfoo", **{"depends-on": ["zlib"]}),
            module_spec("zlib"),
        ]
    )

    code, payload, _ = _run(capsys, "plan", str(manifest), "--config", str(config_file), "--json")

    assert code == ExitCode.SUCCESS
    assert payload["ordering"] == "explicit"
    assert payload["order"] == ["zlib", "libfoo", "app"]


def test_plan_text_output_lists_modules(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest([module_spec("zlib"), module_spec("app")])

    code = cli_entrypoint(["plan", str(manifest), "--config", str(config_file), "--no-color"])
    out = capsys.readouterr().out

    assert code == ExitCode.SUCCESS
    assert "zlib" in out
    assert "app" in out


def test_grants_json_shows_each_context(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest(
        [module_spec("app")],
        **{
            "finish-args": ["--socket=wayland", "--env=APP_MODE=prod"],
            "build-options": {"build-args": ["--share=network"], "test-args": ["--device=dri"]},
        },
    )

    code, payload, _ = _run(
        capsys, "grants", str(manifest), "--config", str(config_file), "--json"
    )

    assert code == ExitCode.SUCCESS
    assert payload["grants"] == {
        "runtime": ["--socket=wayland", "--env=APP_MODE=prod"],
        "build": ["--share=network", "--env=APP_MODE=prod"],
        "test": ["--share=network", "--device=dri", "--env=APP_MODE=prod"],
    }


def test_cycle_exits_with_manifest_error(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest(
        [
            module_spec("a", **{"depends-on": ["b"]}),
            module_spec("b", **{"depends-on": ["a"]}),
        ]
    )

    code, _, err = _run(capsys, "validate", str(manifest), "--config", str(config_file))

    assert code == ExitCode.MANIFEST_ERROR
    assert "cycle" in err.lower()


def test_conflicting_grants_exit_with_manifest_error(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest(
        [module_spec("app")],
        **{"finish-args": ["--env=MODE=a", "--env=MODE=b"]},
    )

    code, _, err = _run(capsys, "grants", str(manifest), "--config", str(config_file))

    assert code == ExitCode.MANIFEST_ERROR
    assert "MODE" in err


def test_missing_manifest_exits_with_manifest_error(
    capsys: pytest.CaptureFixture[str], tmp_path: Path, config_file: Path
) -> None:
    code, _, err = _run(
        capsys, "validate", str(tmp_path / "nope.yaml"), "--config", str(config_file)
    )

    assert code == ExitCode.MANIFEST_ERROR
    assert "manifest not found" in err


def test_directory_manifest_exits_with_manifest_error(
    capsys: pytest.CaptureFixture[str], tmp_path: Path, config_file: Path
) -> None:
    folder = tmp_path / "manifest.yaml"
    folder.mkdir()

    code, _, err = _run(capsys, "validate", str(folder), "--config", str(config_file))

    assert code == ExitCode.MANIFEST_ERROR
    assert "cannot read manifest" in err


def test_invalid_config_override_exits_with_config_error(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest([module_spec("app")])

    code, _, err = _run(
        capsys,
        "validate",
        str(manifest),
        "--config",
        str(config_file),
        "--set",
        "build.parallelism=-1",
    )

    assert code == ExitCode.CONFIG_ERROR
    assert "build.parallelism" in err


def test_malformed_set_flag_exits_with_config_error(
    capsys: pytest.CaptureFixture[str], config_file: Path
) -> None:
    code, _, err = _run(capsys, "config", "--config", str(config_file), "--set", "novalue")

    assert code == ExitCode.CONFIG_ERROR
    assert "expected KEY=VALUE" in err


def test_config_json_applies_profile_and_overrides(
    capsys: pytest.CaptureFixture[str], config_file: Path
) -> None:
    code, payload, _ = _run(
        capsys,
        "config",
        "--config",
        str(config_file),
        "--profile",
        "offline",
        "--set",
        'network.allowlist=["mirror.example.org"]',
        "--json",
    )

    assert code == ExitCode.SUCCESS
    assert payload["active_profile"] == "offline"
    assert payload["config"]["build"]["parallelism"] == 2
    assert payload["config"]["network"]["fetch_policy"] == "deny"
    assert payload["config"]["network"]["allowlist"] == ["mirror.example.org"]


def test_build_json_installs_local_module(
    capsys: pytest.CaptureFixture[str],
    tmp_path: Path,
    write_manifest: Callable[..., Path],
    config_file: Path,
) -> None:
    source = tmp_path / "tool-src"
    source.mkdir()
    (source / "tool.txt").write_text("payload\n", encoding="utf-8")
    manifest = write_manifest(
        [
            {
                "name": "tool",
                "buildsystem": "simple",
                "build-commands": [
                    'mkdir -p "$FLATPAK_DEST/share"',
                    'cp tool.txt "$FLATPAK_DEST/share/"',
                ],
                "sources": [{"type": "dir", "path": str(source)}],
            }
        ]
    )

    code, payload, _ = _run(
        capsys,
        "build",
        str(manifest),
        "--config",
        str(config_file),
        "--run-id",
        "run-cli",
        "--json",
    )

    assert code == ExitCode.SUCCESS
    assert payload["success"] is True
    assert payload["installed"] == ["tool"]
    assert payload["fetch"]["local_copies"] == 1
    image_root = Path(payload["image"]["files_dir"])
    assert (image_root / "share" / "tool.txt").read_text(encoding="utf-8") == "payload\n"
    log_dir = tmp_path.resolve() / ".bundle" / "logs"
    assert Path(payload["log_path"]) == log_dir / "run-cli" / "build.jsonl"


def test_build_failure_exits_with_build_failed(
    capsys: pytest.CaptureFixture[str],
    write_manifest: Callable[..., Path],
    module_spec: Callable[..., dict[str, Any]],
    config_file: Path,
) -> None:
    manifest = write_manifest([module_spec("broken", command="echo nope >&2; exit 3")])

    code, payload, _ = _run(
        capsys, "build", str(manifest), "--config", str(config_file), "--json"
    )

    assert code == ExitCode.BUILD_FAILED
    assert payload["failed"] == ["broken"]
    assert payload["image"] is None
