"""Policy data models: immutable dataclasses shared by every stage of a pass."""

from __future__ import annotations

import enum
import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


class ServiceKind(enum.Enum):
    """Category of a detected host service."""

    WEB = "web"
    DATABASE = "database"


class ActionScope(enum.Enum):
    """Which ports a ban blocks."""

    SINGLE_PORT = "single_port"
    ALL_PORTS = "all_ports"


def normalize_prefix(prefix: str) -> str:
    """Return the canonical CIDR form of *prefix*, or raise ValueError."""
    return str(ipaddress.ip_network(prefix.strip(), strict=False))


def _check_port(port: int) -> None:
    if not 1 <= port <= 65535:
        raise ValueError(f"Port out of range: {port}")


@dataclass(frozen=True)
class ServiceSignal:
    """One active service found on the host."""

    kind: ServiceKind
    flavor: str
    confidence: bool = True


@dataclass(frozen=True)
class AllowEntry:
    """A network prefix the allow-list feed grants access on some ports."""

    network_prefix: str
    ports: frozenset[int] = frozenset()
    label: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "network_prefix", normalize_prefix(self.network_prefix))
        object.__setattr__(self, "ports", frozenset(int(p) for p in self.ports))
        for port in self.ports:
            _check_port(port)


@dataclass(frozen=True)
class Threshold:
    """How many matches within which window trigger a ban."""

    max_attempts: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.window_seconds < 1:
            raise ValueError(f"window_seconds must be >= 1, got {self.window_seconds}")


@dataclass(frozen=True)
class MatchSpec:
    """What the daemon watches for a rule group.

    Opaque to guardsync: the regexes are the daemon's own filter language and
    are passed through untouched. An empty ``failregex`` means ``filter``
    names a filter the daemon already ships.
    """

    filter: str = ""
    failregex: tuple[str, ...] = ()
    ignoreregex: tuple[str, ...] = ()
    logpath: tuple[str, ...] = ()
    backend: str = ""
    journalmatch: str = ""

    @property
    def has_custom_filter(self) -> bool:
        return bool(self.failregex)


@dataclass(frozen=True)
class RuleGroup:
    """A named detection and ban policy for the intrusion-prevention daemon."""

    name: str
    enabled: bool = True
    match_spec: MatchSpec = field(default_factory=MatchSpec)
    threshold: Threshold = field(default_factory=lambda: Threshold(5, 600))
    ban_duration_seconds: int = 3600
    ban_duration_max_seconds: int = 0
    escalating: bool = False
    action_scope: ActionScope = ActionScope.SINGLE_PORT

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Rule group name must not be empty")
        if self.ban_duration_seconds < 0:
            raise ValueError(f"ban_duration_seconds must be >= 0 in '{self.name}'")
        if self.ban_duration_max_seconds < 0:
            raise ValueError(f"ban_duration_max_seconds must be >= 0 in '{self.name}'")


@dataclass(frozen=True)
class FirewallRule:
    """An allow rule: traffic from ``network_prefix`` to ``port``."""

    network_prefix: str
    port: int
    label: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "network_prefix", normalize_prefix(self.network_prefix))
        _check_port(self.port)

    @property
    def key(self) -> tuple[str, int, str]:
        return (self.network_prefix, self.port, self.label)

    def __str__(self) -> str:
        return f"{self.network_prefix} -> {self.port} ({self.label})"


@dataclass(frozen=True)
class PolicyDocument:
    """The desired state for one pass."""

    rule_groups: tuple[RuleGroup, ...] = ()
    firewall_rules: tuple[FirewallRule, ...] = ()

    def __post_init__(self) -> None:
        names = [g.name for g in self.rule_groups]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate rule group names: {', '.join(dupes)}")
        keys = [r.key for r in self.firewall_rules]
        if len(set(keys)) != len(keys):
            raise ValueError("Duplicate firewall rules in policy document")

    def group(self, name: str) -> RuleGroup | None:
        for g in self.rule_groups:
            if g.name == name:
                return g
        return None


@dataclass(frozen=True)
class RuleCatalog:
    """Static rule groups: always-on base groups plus service-gated ones by name."""

    base: tuple[RuleGroup, ...] = ()
    services: Mapping[str, RuleGroup] = field(default_factory=dict)
    name: str = "unnamed"

    def __post_init__(self) -> None:
        object.__setattr__(self, "services", MappingProxyType(dict(self.services)))


@dataclass(frozen=True)
class ReconcilePlan:
    """The add/remove operations that converge current state onto desired state."""

    daemon_adds: tuple[RuleGroup, ...] = ()
    daemon_removes: tuple[str, ...] = ()
    firewall_adds: tuple[FirewallRule, ...] = ()
    firewall_removes: tuple[FirewallRule, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (
            self.daemon_adds
            or self.daemon_removes
            or self.firewall_adds
            or self.firewall_removes
        )

    @property
    def has_daemon_changes(self) -> bool:
        return bool(self.daemon_adds or self.daemon_removes)

    @property
    def has_firewall_changes(self) -> bool:
        return bool(self.firewall_adds or self.firewall_removes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "daemon_adds": [g.name for g in self.daemon_adds],
            "daemon_removes": list(self.daemon_removes),
            "firewall_adds": [
                {"network_prefix": r.network_prefix, "port": r.port, "label": r.label}
                for r in self.firewall_adds
            ],
            "firewall_removes": [
                {"network_prefix": r.network_prefix, "port": r.port, "label": r.label}
                for r in self.firewall_removes
            ],
        }
