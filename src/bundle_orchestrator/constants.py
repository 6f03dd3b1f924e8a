"""Stable constants shared across orchestrator components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
IMAGE_METADATA_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
WORKSPACES_DIR: Final[PurePosixPath] = PurePosixPath(".bundle/workspaces")
CACHE_DIR: Final[PurePosixPath] = PurePosixPath(".bundle/cache")
IMAGE_DIR: Final[PurePosixPath] = PurePosixPath(".bundle/image")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".bundle/logs")

# Install prefix inside the runtime image.
DEFAULT_PREFIX: Final[str] = "/app"

# Per-workspace layout.
WORKSPACE_SOURCE_DIR: Final[str] = "src"
WORKSPACE_BUILD_DIR: Final[str] = "build"
WORKSPACE_INSTALL_DIR: Final[str] = "install"

# Files written next to the aggregated image tree.
IMAGE_FILES_DIR: Final[str] = "files"
IMAGE_METADATA_FILE: Final[str] = "image.json"
LAUNCH_METADATA_FILE: Final[str] = "metadata"

__all__ = [
    "CACHE_DIR",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_PREFIX",
    "IMAGE_DIR",
    "IMAGE_FILES_DIR",
    "IMAGE_METADATA_FILE",
    "IMAGE_METADATA_SCHEMA_VERSION",
    "LAUNCH_METADATA_FILE",
    "LOG_DIR",
    "WORKSPACES_DIR",
    "WORKSPACE_BUILD_DIR",
    "WORKSPACE_INSTALL_DIR",
    "WORKSPACE_SOURCE_DIR",
]
