"""
bundle-orchestrator: package root

Purpose
- Build orchestration engine for sandboxed application bundle manifests:
  module graph validation, source fetching with integrity checks, scheduled
  per-module builds, artifact image aggregation, and sandbox grant resolution.

Import boundary
- No side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
