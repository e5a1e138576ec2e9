"""Reconciler: diff desired state against current state into a ReconcilePlan.

Only state this system created is ever eligible for removal: rule groups whose
name carries the owner prefix and firewall rules carrying the system label.
Everything else on the host is left alone.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from guardsync.policy.models import (
    FirewallRule,
    PolicyDocument,
    ReconcilePlan,
    RuleGroup,
)
from guardsync.policy.synthesizer import DEFAULT_LABEL, DEFAULT_OWNER_PREFIX

logger = logging.getLogger(__name__)


def reconcile(
    desired: PolicyDocument,
    current_daemon_state: Iterable[RuleGroup],
    current_firewall_state: Iterable[FirewallRule],
    owner_prefix: str = DEFAULT_OWNER_PREFIX,
    label: str = DEFAULT_LABEL,
) -> ReconcilePlan:
    """Compute the minimal add/remove operations. No side effects."""
    _check_ownership(desired, owner_prefix, label)

    daemon_adds, daemon_removes = _diff_groups(
        desired.rule_groups, list(current_daemon_state), owner_prefix
    )
    firewall_adds, firewall_removes = _diff_rules(
        desired.firewall_rules, list(current_firewall_state), label
    )

    plan = ReconcilePlan(
        daemon_adds=daemon_adds,
        daemon_removes=daemon_removes,
        firewall_adds=firewall_adds,
        firewall_removes=firewall_removes,
    )
    logger.info(
        "Plan: daemon +%d -%d, firewall +%d -%d",
        len(plan.daemon_adds),
        len(plan.daemon_removes),
        len(plan.firewall_adds),
        len(plan.firewall_removes),
    )
    return plan


def _check_ownership(desired: PolicyDocument, owner_prefix: str, label: str) -> None:
    if not owner_prefix:
        raise ValueError("Owner prefix must not be empty")
    if not label:
        raise ValueError("Firewall label must not be empty")
    for group in desired.rule_groups:
        if not group.name.startswith(owner_prefix):
            raise ValueError(
                f"Desired rule group '{group.name}' lacks owner prefix '{owner_prefix}'"
            )
    for rule in desired.firewall_rules:
        if rule.label != label:
            raise ValueError(f"Desired firewall rule {rule} lacks label '{label}'")


def _diff_groups(
    desired: tuple[RuleGroup, ...],
    current: list[RuleGroup],
    owner_prefix: str,
) -> tuple[tuple[RuleGroup, ...], tuple[str, ...]]:
    current_by_name: dict[str, RuleGroup] = {}
    for group in current:
        current_by_name.setdefault(group.name, group)

    # An add is an upsert: missing groups and groups that drifted
    adds = tuple(g for g in desired if current_by_name.get(g.name) != g)

    desired_names = {g.name for g in desired}
    removes = tuple(
        sorted(
            name
            for name in current_by_name
            if name.startswith(owner_prefix) and name not in desired_names
        )
    )
    return adds, removes


def _diff_rules(
    desired: tuple[FirewallRule, ...],
    current: list[FirewallRule],
    label: str,
) -> tuple[tuple[FirewallRule, ...], tuple[FirewallRule, ...]]:
    current_keys = {r.key for r in current}
    desired_keys = {r.key for r in desired}

    adds = tuple(r for r in desired if r.key not in current_keys)

    removes: dict[tuple[str, int, str], FirewallRule] = {}
    for rule in current:
        if rule.label == label and rule.key not in desired_keys:
            removes.setdefault(rule.key, rule)
    return adds, tuple(removes[k] for k in sorted(removes))
