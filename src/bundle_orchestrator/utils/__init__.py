"""Utility exports for filesystem, hashing, and concurrency helpers."""

from bundle_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    KeyedCoalescer,
    run_cancellable,
)
from bundle_orchestrator.utils.fs import (
    atomic_write,
    copy_tree,
    iter_tree,
    publish_directory,
    safe_delete,
    staging_directory,
)
from bundle_orchestrator.utils.hashing import (
    create_manifest,
    manifest_digest,
    sha256_bytes,
    sha256_file,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "KeyedCoalescer",
    "atomic_write",
    "copy_tree",
    "create_manifest",
    "iter_tree",
    "manifest_digest",
    "publish_directory",
    "run_cancellable",
    "safe_delete",
    "sha256_bytes",
    "sha256_file",
    "staging_directory",
]
