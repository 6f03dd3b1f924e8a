"""Dependency planning for manifest modules."""

from bundle_orchestrator.planning.module_graph import ModuleGraph, build_module_graph, find_cycle

__all__ = ["ModuleGraph", "build_module_graph", "find_cycle"]
