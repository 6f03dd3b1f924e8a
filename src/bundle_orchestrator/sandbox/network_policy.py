"""Network egress policy consulted before any source transport touches the network."""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from urllib.parse import urlsplit

from bundle_orchestrator.domain.models import ArchiveSource, GitSource, Manifest

DecisionLogger = Callable[["NetworkDecision"], None]


class NetworkPolicyMode(StrEnum):
    """Supported fetch policy modes."""

    DENY = "deny"
    ALLOWLIST = "allowlist"
    PERMISSIVE = "permissive"


class NetworkPolicyViolationError(PermissionError):
    """Raised when a network request is denied by policy."""

    def __init__(self, decision: NetworkDecision) -> None:
        self.decision = decision
        super().__init__(f"network request denied for host {decision.host!r}: {decision.reason}")


@dataclass(frozen=True, slots=True)
class NetworkDecision:
    """Policy decision for one fetch target."""

    mode: NetworkPolicyMode
    target: str
    host: str
    scheme: str | None
    allowed: bool
    reason: str
    matched_rule: str | None
    context: Mapping[str, str] = field(default_factory=dict)
    decided_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass(frozen=True, slots=True)
class _AllowRule:
    raw: str
    exact_host: str | None = None
    suffix: str | None = None
    ip_network: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None


class NetworkPolicy:
    """Policy evaluator with deny, allowlist, and permissive modes.

    In ``deny`` mode every request is refused, so only warm-cache builds succeed.
    """

    def __init__(
        self,
        *,
        mode: NetworkPolicyMode | str = NetworkPolicyMode.DENY,
        allowlist: Iterable[str] = (),
        decision_logger: DecisionLogger | None = None,
    ) -> None:
        self._mode = _coerce_mode(mode)
        rules: dict[str, _AllowRule] = {}
        for item in allowlist:
            rule = _parse_allow_rule(item)
            rules.setdefault(rule.raw, rule)
        self._rules = tuple(rules.values())
        self._decision_logger = decision_logger

    @classmethod
    def for_manifest(
        cls,
        manifest: Manifest,
        *,
        mode: NetworkPolicyMode | str,
        extra_allowlist: Iterable[str] = (),
        decision_logger: DecisionLogger | None = None,
    ) -> NetworkPolicy:
        """Allow the hosts of every declared remote source plus ``extra_allowlist``."""

        hosts: list[str] = []
        for module in manifest.modules:
            for source in module.sources:
                if isinstance(source, (ArchiveSource, GitSource)):
                    host = source_host(source.url)
                    if host is not None:
                        hosts.append(host)
        hosts.extend(extra_allowlist)
        return cls(mode=mode, allowlist=hosts, decision_logger=decision_logger)

    @property
    def mode(self) -> NetworkPolicyMode:
        return self._mode

    @property
    def allowlist(self) -> tuple[str, ...]:
        return tuple(rule.raw for rule in self._rules)

    def evaluate(self, target: str, *, context: Mapping[str, str] | None = None) -> NetworkDecision:
        scheme, host = _parse_target(target)
        matched_rule = self._match_rule(host)

        if self._mode is NetworkPolicyMode.DENY:
            allowed = False
            reason = "network access denied by policy mode"
        elif self._mode is NetworkPolicyMode.ALLOWLIST:
            allowed = matched_rule is not None
            reason = (
                "network access allowed by allowlist rule"
                if allowed
                else "network access denied: host is not in allowlist"
            )
        else:
            allowed = True
            reason = (
                "network access allowed by allowlist rule"
                if matched_rule is not None
                else "network access allowed in permissive mode"
            )

        decision = NetworkDecision(
            mode=self._mode,
            target=target,
            host=host,
            scheme=scheme,
            allowed=allowed,
            reason=reason,
            matched_rule=matched_rule,
            context=dict(context or {}),
        )
        if self._decision_logger is not None:
            self._decision_logger(decision)
        return decision

    def enforce(self, target: str, *, context: Mapping[str, str] | None = None) -> NetworkDecision:
        decision = self.evaluate(target, context=context)
        if not decision.allowed:
            raise NetworkPolicyViolationError(decision)
        return decision

    def _match_rule(self, host: str) -> str | None:
        try:
            host_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = ipaddress.ip_address(
                host
            )
        except ValueError:
            host_ip = None

        for rule in self._rules:
            if rule.exact_host is not None and host == rule.exact_host:
                return rule.raw
            suffix = rule.suffix
            if suffix is not None and (host == suffix or host.endswith(f".{suffix}")):
                return rule.raw
            if rule.ip_network is not None and host_ip is not None and host_ip in rule.ip_network:
                return rule.raw
        return None


def source_host(url: str) -> str | None:
    """Host part of a source URL, or ``None`` for local and scp-less paths."""

    stripped = url.strip()
    if "://" not in stripped:
        # git scp-like syntax: user@host:path
        head, sep, _ = stripped.partition(":")
        if sep and "@" in head and "/" not in head:
            return head.rpartition("@")[2].lower()
        return None
    hostname = urlsplit(stripped).hostname
    return hostname.lower() if hostname else None


def _coerce_mode(value: NetworkPolicyMode | str) -> NetworkPolicyMode:
    if isinstance(value, NetworkPolicyMode):
        return value
    normalized = value.strip().lower()
    try:
        return NetworkPolicyMode(normalized)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in NetworkPolicyMode)
        raise ValueError(
            f"unsupported network policy mode {value!r}; expected one of: {allowed}"
        ) from exc


def _normalize_host(value: str, *, field_name: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    if " " in normalized or "/" in normalized or "\x00" in normalized:
        raise ValueError(f"{field_name} must be a host or IP literal")
    return normalized


def _parse_target(target: str) -> tuple[str | None, str]:
    normalized = target.strip()
    if not normalized:
        raise ValueError("target must not be empty")
    host = source_host(normalized)
    if host is not None:
        scheme = urlsplit(normalized).scheme.lower() if "://" in normalized else "ssh"
        return scheme or None, _normalize_host(host, field_name="target host")

    parsed = urlsplit(f"//{normalized}")
    if parsed.hostname is None:
        return None, _normalize_host(normalized, field_name="target host")
    return None, _normalize_host(parsed.hostname, field_name="target host")


def _parse_allow_rule(raw_rule: str) -> _AllowRule:
    normalized = raw_rule.strip().lower()
    if not normalized:
        raise ValueError("allowlist rule must not be empty")

    if normalized.startswith("*."):
        suffix = normalized[2:]
        if not suffix:
            raise ValueError("allowlist wildcard rule must include a suffix")
        return _AllowRule(raw=normalized, suffix=suffix)

    try:
        network = ipaddress.ip_network(normalized, strict=False)
    except ValueError:
        network = None
    if network is not None:
        return _AllowRule(raw=normalized, ip_network=network)

    return _AllowRule(
        raw=normalized, exact_host=_normalize_host(normalized, field_name="allowlist rule")
    )


__all__ = [
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
    "NetworkPolicyViolationError",
    "source_host",
]
