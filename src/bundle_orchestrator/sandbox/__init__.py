"""Sandbox policy, grant sets, workspaces, and step execution."""

from bundle_orchestrator.sandbox.grants import (
    FilesystemMode,
    GrantToken,
    SandboxGrant,
    parse_declaration,
)
from bundle_orchestrator.sandbox.network_policy import (
    NetworkDecision,
    NetworkPolicy,
    NetworkPolicyMode,
    NetworkPolicyViolationError,
)
from bundle_orchestrator.sandbox.policy_resolver import (
    ResolvedPolicy,
    resolve_declarations,
    resolve_policy,
)
from bundle_orchestrator.sandbox.resources import HostResources, default_parallelism
from bundle_orchestrator.sandbox.runner import (
    CommandResult,
    CommandRunner,
    SandboxInvocation,
    SubprocessExecutor,
)
from bundle_orchestrator.sandbox.workspace import BuildWorkspace, WorkspaceManager

__all__ = [
    "BuildWorkspace",
    "CommandResult",
    "CommandRunner",
    "FilesystemMode",
    "GrantToken",
    "HostResources",
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
    "NetworkPolicyViolationError",
    "ResolvedPolicy",
    "SandboxGrant",
    "SandboxInvocation",
    "SubprocessExecutor",
    "WorkspaceManager",
    "default_parallelism",
    "parse_declaration",
    "resolve_declarations",
    "resolve_policy",
]
