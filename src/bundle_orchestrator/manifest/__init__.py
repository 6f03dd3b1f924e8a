"""Manifest loading, validation, and typed build options."""

from bundle_orchestrator.manifest.options import (
    RECOGNIZED_OPTIONS,
    parse_build_options,
    render_build_options,
)
from bundle_orchestrator.manifest.parser import load_manifest, parse_manifest

__all__ = [
    "RECOGNIZED_OPTIONS",
    "load_manifest",
    "parse_build_options",
    "parse_manifest",
    "render_build_options",
]
