"""Command-line interface router for bundle-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bundle_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
)
from bundle_orchestrator.control_plane import BuildController, new_run_id
from bundle_orchestrator.domain.errors import (
    ConflictingGrant,
    CyclicDependency,
    DanglingDependency,
    DuplicateModuleName,
    ManifestError,
)
from bundle_orchestrator.observability import configure_structlog, setup_logging, shutdown_logging
from bundle_orchestrator.ui.render import CLIRenderer, create_renderer

if TYPE_CHECKING:
    from bundle_orchestrator.control_plane import BuildOutcome, ValidatedManifest

DEFAULT_MANIFEST_PATH = "manifest.yaml"

_STRUCTURAL_ERRORS = (
    ManifestError,
    DuplicateModuleName,
    DanglingDependency,
    CyclicDependency,
    ConflictingGrant,
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bundle",
        description=(
            "bundle-orchestrator: build a sandboxed application bundle from a manifest.\n\n"
            "Common workflows:\n"
            "  bundle validate app.yaml     Check manifest structure and grants\n"
            "  bundle plan app.yaml         Show the module build order\n"
            "  bundle build app.yaml        Fetch, build and aggregate all modules\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to bundle TOML config (default: ./bundle.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value by dotted key, e.g. build.parallelism=4.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--verbose", "-v", action="store_true", default=False)

    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, handler, summary in (
        ("validate", _cmd_validate, "Validate a manifest without building anything"),
        ("plan", _cmd_plan, "Show the dependency graph and build order"),
        ("grants", _cmd_grants, "Show resolved build, test and runtime sandbox grants"),
    ):
        sub = subparsers.add_parser(name, parents=[common], help=summary, description=summary)
        sub.add_argument(
            "manifest",
            nargs="?",
            default=DEFAULT_MANIFEST_PATH,
            help=f"Manifest path (default: {DEFAULT_MANIFEST_PATH})",
        )
        sub.set_defaults(handler=handler)

    build_parser_ = subparsers.add_parser(
        "build",
        parents=[common],
        help="Build every module and aggregate the image",
        description=(
            "Fetch sources, build modules in dependency order and write the image.\n\n"
            "Examples:\n"
            "  bundle build app.yaml\n"
            "  bundle build app.yaml --profile offline\n"
            "  bundle build app.yaml -j 4 --failure-mode halt\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build_parser_.add_argument(
        "manifest",
        nargs="?",
        default=DEFAULT_MANIFEST_PATH,
        help=f"Manifest path (default: {DEFAULT_MANIFEST_PATH})",
    )
    build_parser_.add_argument(
        "-j", "--parallelism", type=int, default=None, help="Concurrent modules (0 = auto)"
    )
    build_parser_.add_argument(
        "--failure-mode", choices=("isolate", "halt"), default=None, help="Failure handling"
    )
    build_parser_.add_argument(
        "--test-failure-policy",
        choices=("fatal", "advisory"),
        default=None,
        help="Whether failing tests fail their module",
    )
    build_parser_.add_argument(
        "--fetch-policy",
        choices=("deny", "allowlist", "permissive"),
        default=None,
        help="Network policy for source fetches",
    )
    build_parser_.add_argument(
        "--retain-workspaces",
        action="store_true",
        default=None,
        help="Keep per-module workspaces after the run",
    )
    build_parser_.add_argument("--run-id", default=None, help="Explicit run identifier")
    build_parser_.set_defaults(handler=_cmd_build)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show the effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    validated = _validate_manifest(args)
    manifest = validated.manifest
    payload: dict[str, object] = {"command": "validate", "valid": True, **validated.to_dict()}

    if args.json:
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Manifest", _manifest_path(args))
    renderer.kv("Application", manifest.app_id)
    renderer.kv("Runtime", f"{manifest.runtime}/{manifest.runtime_version}")
    renderer.kv("SDK", manifest.sdk)
    renderer.kv("Modules", len(validated.graph.names))
    renderer.kv("Ordering", validated.graph.ordering)
    renderer.text("Manifest is valid.")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    validated = _validate_manifest(args)
    graph = validated.graph
    payload: dict[str, object] = {"command": "plan", **graph.serialize()}

    if args.json:
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Ordering", graph.ordering)
    rows = [
        [
            str(index + 1),
            name,
            graph.module(name).buildsystem.value,
            ", ".join(graph.dependencies(name)) or "-",
        ]
        for index, name in enumerate(graph.topological_order())
    ]
    renderer.table(["#", "MODULE", "BUILDSYSTEM", "DEPENDS ON"], rows, title="Build order:")
    return 0


def _cmd_grants(args: argparse.Namespace) -> int:
    validated = _validate_manifest(args)
    grants = validated.policy.to_dict()
    payload: dict[str, object] = {"command": "grants", "grants": grants}

    if args.json:
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    for context_name in ("build", "test", "runtime"):
        renderer.section(f"{context_name.capitalize()} grants:")
        if grants[context_name]:
            renderer.items(grants[context_name])
        else:
            renderer.text("  (none)")
    return 0


def _cmd_build(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = args.run_id or new_run_id()
    observability = config.get("observability", {})
    try:
        handle = setup_logging(
            observability if isinstance(observability, Mapping) else None, run_id=run_id
        )
    except ValueError as exc:
        raise CLIError(f"cannot start run logging: {exc}", exit_code=2) from exc

    try:
        controller = BuildController(_manifest_path(args), config=config, run_id=run_id)
        try:
            outcome = asyncio.run(_run_with_signals(controller))
        except _STRUCTURAL_ERRORS as exc:
            raise CLIError(str(exc), exit_code=3) from exc
    finally:
        shutdown_logging(handle)

    exit_code = 0 if outcome.success else 1
    if args.json:
        payload: dict[str, object] = {"command": "build", **outcome.to_dict()}
        payload["log_path"] = str(handle.log_path)
        _emit_json(payload)
        return exit_code

    _render_outcome(_get_renderer(args), outcome, log_path=handle.log_path)
    return exit_code


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    payload: dict[str, object] = {
        "command": "config",
        "active_profile": args.profile,
        "config": config,
    }

    if args.json:
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(json.dumps(config, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Build helpers
# ---------------------------------------------------------------------------


async def _run_with_signals(controller: BuildController) -> BuildOutcome:
    """Run the build with SIGINT/SIGTERM wired to the run's cancellation token."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, controller.cancel, f"received {signum.name}")
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(signum)
    try:
        return await controller.run()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _render_outcome(renderer: CLIRenderer, outcome: BuildOutcome, *, log_path: Path) -> None:
    report = outcome.report
    renderer.kv("Run ID", report.run_id)
    renderer.kv("Result", "success" if outcome.success else "failed")
    if report.cancelled:
        renderer.kv("Cancelled", "true")
    renderer.kv("Peak parallelism", report.peak_parallelism)
    fetch = outcome.fetch_stats
    renderer.kv(
        "Fetch",
        f"cache_hits={fetch.cache_hits} cache_misses={fetch.cache_misses} "
        f"network_requests={fetch.network_requests}",
    )
    renderer.report(report)
    if outcome.image is not None:
        renderer.section("Image:")
        renderer.kv("  Root", outcome.image.root)
        renderer.kv("  Files", outcome.image.file_count)
        renderer.kv("  Metadata", outcome.image.launch_metadata_path)
    renderer.kv("Log", log_path)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(args.no_color), verbose=bool(args.verbose))


def _manifest_path(args: argparse.Namespace) -> Path:
    candidate = Path(args.manifest).expanduser().resolve()
    if not candidate.is_file():
        raise CLIError(f"manifest not found: {candidate}", exit_code=3)
    return candidate


def _validate_manifest(args: argparse.Namespace) -> ValidatedManifest:
    config = _load_effective_config(args)
    configure_structlog(logging.WARNING)
    controller = BuildController(_manifest_path(args), config=config)
    try:
        return controller.validate()
    except _STRUCTURAL_ERRORS as exc:
        raise CLIError(str(exc), exit_code=3) from exc


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides = _cli_overrides(args)
    try:
        return load_config(args.config_path, profile=args.profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _cli_overrides(args: argparse.Namespace) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for raw in args.overrides:
        key, separator, value = raw.partition("=")
        if not separator or not key.strip():
            raise CLIError(f"invalid --set value {raw!r}; expected KEY=VALUE", exit_code=2)
        overrides[key.strip()] = _parse_override_value(value)

    flag_bindings = (
        ("parallelism", "build.parallelism"),
        ("failure_mode", "build.failure_mode"),
        ("test_failure_policy", "build.test_failure_policy"),
        ("fetch_policy", "network.fetch_policy"),
        ("retain_workspaces", "build.retain_workspaces"),
    )
    for attr, key in flag_bindings:
        value = getattr(args, attr, None)
        if value is not None:
            overrides[key] = value
    return overrides


def _parse_override_value(raw: str) -> object:
    """Decode JSON scalars and lists; anything else is taken as a plain string."""

    text = raw.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


__all__ = ["CLIError", "build_parser", "run_cli"]
