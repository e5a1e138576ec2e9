"""Control protocols: every daemon and firewall backend must satisfy these."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from guardsync.policy.models import FirewallRule, RuleGroup


@runtime_checkable
class DaemonControl(Protocol):
    """Protocol for intrusion-prevention daemon backends."""

    def list_rule_groups(self) -> list[RuleGroup]:
        """Return every configured rule group, owned or not."""
        ...

    def upsert_rule_group(self, group: RuleGroup) -> None:
        """Create or replace one rule group."""
        ...

    def remove_rule_group(self, name: str) -> None:
        """Delete one rule group by name."""
        ...

    def reload(self) -> None:
        """Make the daemon pick up configuration changes."""
        ...

    def is_active(self) -> bool:
        """Whether the daemon is running."""
        ...


@runtime_checkable
class FirewallControl(Protocol):
    """Protocol for firewall backends."""

    def list_rules(self) -> list[FirewallRule]:
        """Return every allow rule expressible as a FirewallRule."""
        ...

    def add_rule(self, rule: FirewallRule) -> None:
        ...

    def remove_rule(self, rule: FirewallRule) -> None:
        ...
