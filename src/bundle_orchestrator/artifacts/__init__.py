"""Artifact image aggregation and cleanup filtering."""

from bundle_orchestrator.artifacts.aggregator import (
    ArtifactImage,
    FinalizedImage,
    ImageFinalizedError,
    ImageLayer,
    PathOverlap,
    render_launch_metadata,
)
from bundle_orchestrator.artifacts.cleanup import CleanupFilter, remove_matching

__all__ = [
    "ArtifactImage",
    "CleanupFilter",
    "FinalizedImage",
    "ImageFinalizedError",
    "ImageLayer",
    "PathOverlap",
    "remove_matching",
    "render_launch_metadata",
]
