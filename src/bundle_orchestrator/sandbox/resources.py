"""Host resource probing used to size build parallelism."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import psutil

_BYTES_PER_GIB = 1024 * 1024 * 1024
MEMORY_PER_WORKER_BYTES = 2 * _BYTES_PER_GIB


@dataclass(frozen=True, slots=True)
class HostResources:
    """Point-in-time host metrics."""

    cpu_count: int
    memory_total_bytes: int
    memory_available_bytes: int
    disk_free_bytes: int | None = None

    def __post_init__(self) -> None:
        if self.cpu_count <= 0:
            raise ValueError("cpu_count must be > 0")
        if self.memory_available_bytes < 0 or self.memory_total_bytes < 0:
            raise ValueError("memory values must be >= 0")

    def to_dict(self) -> dict[str, int | None]:
        return {
            "cpu_count": self.cpu_count,
            "memory_total_bytes": self.memory_total_bytes,
            "memory_available_bytes": self.memory_available_bytes,
            "disk_free_bytes": self.disk_free_bytes,
        }


def probe_host(disk_path: Path | str | None = None) -> HostResources:
    """Collect CPU, memory, and optional disk metrics with ``psutil``."""

    memory = psutil.virtual_memory()
    cpu_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    disk_free: int | None = None
    if disk_path is not None:
        target = Path(disk_path)
        while not target.exists() and target != target.parent:
            target = target.parent
        disk_free = int(psutil.disk_usage(str(target)).free)
    return HostResources(
        cpu_count=int(cpu_count),
        memory_total_bytes=int(memory.total),
        memory_available_bytes=int(memory.available),
        disk_free_bytes=disk_free,
    )


def default_parallelism(resources: HostResources | None = None) -> int:
    """One worker per 2 GiB of available memory, bounded by CPU count, at least 1."""

    host = resources or probe_host()
    by_memory = host.memory_available_bytes // MEMORY_PER_WORKER_BYTES
    return max(1, min(host.cpu_count, int(by_memory)))


def resolve_parallelism(configured: int, resources: HostResources | None = None) -> int:
    """``0`` means automatic."""

    if configured < 0:
        raise ValueError("parallelism must be >= 0")
    if configured == 0:
        return default_parallelism(resources)
    return configured


__all__ = [
    "MEMORY_PER_WORKER_BYTES",
    "HostResources",
    "default_parallelism",
    "probe_host",
    "resolve_parallelism",
]
