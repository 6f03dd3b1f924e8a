from __future__ import annotations

import hashlib
import io
import json
import re
import tarfile
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from bundle_orchestrator.config.schema import ConfigValidationError
from bundle_orchestrator.control_plane.controller import BuildController, new_run_id
from bundle_orchestrator.domain.errors import (
    CyclicDependency,
    DanglingDependency,
    DuplicateModuleName,
    FetchError,
    ManifestError,
)
from bundle_orchestrator.domain.models import ModuleState

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

ARCHIVE_URL = "https://downloads.example.org/zlib-1.3.tar.gz"


def test_new_run_id_is_sortable_and_unique() -> None:
    stamp = datetime(2026, 3, 1, 12, 30, 5, tzinfo=UTC)
    first = new_run_id(stamp)
    second = new_run_id(stamp)

    assert re.fullmatch(r"20260301T123005Z-[0-9a-f]{8}", first)
    assert first != second


def test_invalid_config_is_rejected_up_front(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
) -> None:
    manifest = write_manifest([module_spec("a")])

    with pytest.raises(ConfigValidationError, match="build.parallelism"):
        BuildController(manifest, config=make_config(build={"parallelism": -1}))


def test_cycle_is_reported_before_any_command_runs(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
) -> None:
    manifest = write_manifest(
        [
            module_spec("a", **{"depends-on": ["c"]}),
            module_spec("b", **{"depends-on": ["a"]}),
            module_spec("c", **{"depends-on": ["b"]}),
        ]
    )
    controller = BuildController(manifest, config=make_config(), executor=executor)

    with pytest.raises(CyclicDependency) as excinfo:
        controller.prepare()

    assert set(excinfo.value.cycle) == {"a", "b", "c"}
    assert executor.calls == []
    assert controller.context is None


@pytest.mark.parametrize(
    ("modules", "error_type"),
    [
        ([{"name": "a"}, {"name": "a"}], DuplicateModuleName),
        ([{"name": "a", "depends-on": ["ghost"]}], DanglingDependency),
    ],
)
def test_structural_errors_surface_from_validate(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    modules: list[dict[str, Any]],
    error_type: type[Exception],
) -> None:
    specs = [module_spec(**item) for item in modules]
    manifest = write_manifest(specs)

    with pytest.raises(error_type):
        BuildController(manifest, config=make_config()).validate()


def test_missing_manifest_is_a_manifest_error(
    tmp_path: Path, make_config: Callable[..., dict[str, Any]]
) -> None:
    controller = BuildController(tmp_path / "absent.yaml", config=make_config())

    with pytest.raises(ManifestError, match="manifest not found"):
        controller.validate()


def test_validate_describes_graph_and_grants(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
) -> None:
    manifest = write_manifest(
        [module_spec("lib"), module_spec("app", **{"depends-on": ["lib"]})],
        **{"finish-args": ["--share=network", "--socket=wayland"]},
    )

    validated = BuildController(manifest, config=make_config()).validate()
    payload = validated.to_dict()

    assert payload["app_id"] == "org.example.App"
    assert payload["runtime"] == "org.example.Platform/24.08"
    assert payload["modules"] == 2
    assert payload["graph"]["order"] == ["lib", "app"]
    assert payload["graph"]["ordering"] == "explicit"
    assert "--share=network" in payload["grants"]["runtime"]
    json.dumps(payload)


async def test_successful_run_writes_image_metadata(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
) -> None:
    manifest = write_manifest(
        [module_spec("app")],
        **{"finish-args": ["--socket=wayland"], "cleanup": ["*.la"]},
    )
    executor.on("app", "build", files={"bin/example-app": "#!/bin/sh\n", "lib/libx.la": "la"})

    outcome = await BuildController(manifest, config=make_config(), executor=executor).run()

    assert outcome.success
    assert outcome.image is not None
    assert outcome.image.removed_by_cleanup == ("lib/libx.la",)
    document = json.loads(outcome.image.metadata_path.read_text(encoding="utf-8"))
    assert document["app_id"] == "org.example.App"
    assert "bin/example-app" in document["files"]
    assert document["owners"] == {"bin/example-app": "app"}
    launch = outcome.image.launch_metadata_path.read_text(encoding="utf-8")
    assert "[Application]" in launch
    assert "command=example-app" in launch

    payload = outcome.to_dict()
    assert payload["success"] is True
    assert payload["image"]["file_count"] == 1
    json.dumps(payload)


async def test_failed_run_leaves_image_unfinalized(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
) -> None:
    manifest = write_manifest([module_spec("app")])
    executor.on("app", "build", returncode=1)

    controller = BuildController(manifest, config=make_config(), executor=executor)
    outcome = await controller.run()

    assert not outcome.success
    assert outcome.image is None
    assert outcome.to_dict()["image"] is None
    assert controller.context is not None
    assert not (controller.context.image.root / "image.json").exists()


async def test_offline_policy_fails_uncached_remote_sources(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
    archive_transport: Any,
) -> None:
    manifest = write_manifest(
        [
            module_spec(
                "zlib",
                sources=[{"type": "archive", "url": ARCHIVE_URL, "sha256": "cd" * 32}],
            )
        ]
    )

    outcome = await BuildController(
        manifest,
        config=make_config(network={"fetch_policy": "deny"}),
        executor=executor,
        archive_transport=archive_transport,
    ).run()

    record = outcome.report.record("zlib")
    assert record.state is ModuleState.FAILED
    assert isinstance(record.error, FetchError)
    assert "denied" in str(record.error)
    assert archive_transport.requests == []
    assert executor.calls == []


async def test_second_run_is_served_from_cache_even_offline(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
    archive_transport: Any,
    tarball: Callable[..., tuple[bytes, str]],
) -> None:
    payload, digest = tarball({"configure.ac": "AC_INIT\n"})
    archive_transport.payloads[ARCHIVE_URL] = payload
    manifest = write_manifest(
        [
            module_spec(
                "zlib",
                sources=[{"type": "archive", "url": ARCHIVE_URL, "sha256": digest}],
            )
        ]
    )

    first = await BuildController(
        manifest, config=make_config(), executor=executor, archive_transport=archive_transport
    ).run()
    second = await BuildController(
        manifest,
        config=make_config(network={"fetch_policy": "deny"}),
        executor=executor,
        archive_transport=archive_transport,
    ).run()

    assert first.success and second.success
    assert archive_transport.requests == [ARCHIVE_URL]
    assert first.fetch_stats.network_requests == 1
    assert second.fetch_stats.cache_hits == 1
    assert second.fetch_stats.network_requests == 0


async def test_network_decisions_are_logged(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
    archive_transport: Any,
    tarball: Callable[..., tuple[bytes, str]],
) -> None:
    import structlog

    payload, digest = tarball({"README": "hi\n"})
    archive_transport.payloads[ARCHIVE_URL] = payload
    manifest = write_manifest(
        [
            module_spec(
                "zlib",
                sources=[{"type": "archive", "url": ARCHIVE_URL, "sha256": digest}],
            )
        ]
    )

    with structlog.testing.capture_logs() as captured:
        outcome = await BuildController(
            manifest, config=make_config(), executor=executor, archive_transport=archive_transport
        ).run()

    assert outcome.success
    decisions = [entry for entry in captured if entry["event"] == "network_policy_decision"]
    assert len(decisions) == 1
    assert decisions[0]["host"] == "downloads.example.org"
    assert decisions[0]["allowed"] is True
    assert decisions[0]["module"] == "zlib"


async def test_unsafe_archive_fails_only_its_module(
    write_manifest: Callable[..., Path],
    make_config: Callable[..., dict[str, Any]],
    module_spec: Callable[..., dict[str, Any]],
    executor: Any,
    archive_transport: Any,
) -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        link = tarfile.TarInfo("pkg-1.0/etc-link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/hosts"
        archive.addfile(link)
    payload = buffer.getvalue()
    archive_transport.payloads[ARCHIVE_URL] = payload
    manifest = write_manifest(
        [
            module_spec(
                "bad",
                sources=[
                    {
                        "type": "archive",
                        "url": ARCHIVE_URL,
                        "sha256": hashlib.sha256(payload).hexdigest(),
                    }
                ],
            ),
            module_spec("independent"),
        ]
    )

    outcome = await BuildController(
        manifest,
        config=make_config(build={"implicit_order": "hint"}),
        executor=executor,
        archive_transport=archive_transport,
    ).run()

    bad = outcome.report.record("bad")
    assert bad.state is ModuleState.FAILED
    assert isinstance(bad.error, FetchError)
    assert "unsafe archive entry" in str(bad.error)
    assert outcome.report.record("independent").state is ModuleState.INSTALLED
