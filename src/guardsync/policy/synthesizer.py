"""Policy synthesizer: build the desired PolicyDocument for one pass.

Pure function of its inputs. The same signals, entries and catalog always give
an identical document, which is what makes repeated passes idempotent.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from dataclasses import dataclass

from guardsync.policy.models import (
    AllowEntry,
    FirewallRule,
    PolicyDocument,
    RuleCatalog,
    RuleGroup,
    ServiceKind,
    ServiceSignal,
)

DEFAULT_PORTS: tuple[int, ...] = (80, 443)
DEFAULT_OWNER_PREFIX = "guardsync-"
DEFAULT_LABEL = "guardsync"


@dataclass(frozen=True)
class ServiceGate:
    """Appends a catalog group when a service of ``kind`` is present.

    ``group`` may reference ``{flavor}``. A flavor whose group the catalog
    doesn't define still gets a disabled placeholder, so the document records
    that the service was seen but can't be protected yet.
    """

    kind: ServiceKind
    group: str


SERVICE_GATES: tuple[ServiceGate, ...] = (
    ServiceGate(ServiceKind.WEB, "{flavor}-bots"),
    ServiceGate(ServiceKind.DATABASE, "db-auth"),
)


def synthesize(
    signals: Iterable[ServiceSignal],
    allow_entries: Iterable[AllowEntry],
    static_rules: RuleCatalog,
    ports: Iterable[int] = DEFAULT_PORTS,
    owner_prefix: str = DEFAULT_OWNER_PREFIX,
    label: str = DEFAULT_LABEL,
    gates: tuple[ServiceGate, ...] = SERVICE_GATES,
) -> PolicyDocument:
    """Combine probe results, allow-list and static rules into desired state."""
    by_kind = _signals_by_kind(signals)

    groups: list[RuleGroup] = list(static_rules.base)
    for gate in gates:
        signal = by_kind.get(gate.kind)
        if signal is None:
            continue
        name = gate.group.format(flavor=signal.flavor)
        group = static_rules.services.get(name)
        if group is None:
            group = RuleGroup(name=name, enabled=False)
        groups.append(group)

    owned = tuple(_own(g, owner_prefix) for g in groups)
    return PolicyDocument(
        rule_groups=owned,
        firewall_rules=expand_allow_entries(allow_entries, ports, label),
    )


def expand_allow_entries(
    allow_entries: Iterable[AllowEntry],
    ports: Iterable[int] = DEFAULT_PORTS,
    label: str = DEFAULT_LABEL,
) -> tuple[FirewallRule, ...]:
    """One FirewallRule per entry per port, in entry order then port order."""
    default_ports = sorted(set(ports))
    rules: list[FirewallRule] = []
    seen: set[tuple[str, int, str]] = set()
    for entry in allow_entries:
        for port in sorted(entry.ports) if entry.ports else default_ports:
            rule = FirewallRule(network_prefix=entry.network_prefix, port=port, label=label)
            if rule.key in seen:
                continue
            seen.add(rule.key)
            rules.append(rule)
    return tuple(rules)


def _signals_by_kind(signals: Iterable[ServiceSignal]) -> dict[ServiceKind, ServiceSignal]:
    # Sorted so a stray second signal of one kind resolves the same way every time
    result: dict[ServiceKind, ServiceSignal] = {}
    for signal in sorted(signals, key=lambda s: (s.kind.value, s.flavor)):
        result.setdefault(signal.kind, signal)
    return result


def _own(group: RuleGroup, owner_prefix: str) -> RuleGroup:
    if group.name.startswith(owner_prefix):
        return group
    return dataclasses.replace(group, name=f"{owner_prefix}{group.name}")
