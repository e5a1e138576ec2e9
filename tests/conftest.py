"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from guardsync.errors import CommandError, GuardSyncError
from guardsync.fetch import AllowListFetcher
from guardsync.policy.loader import load_default_catalog
from guardsync.policy.models import (
    ActionScope,
    FirewallRule,
    MatchSpec,
    RuleCatalog,
    RuleGroup,
    Threshold,
)


class FakeDaemon:
    """In-memory DaemonControl."""

    def __init__(self, groups=(), fail_on=(), active: bool = True) -> None:
        self.groups = {g.name: g for g in groups}
        self.fail_on = set(fail_on)
        self.active = active
        self.reloads = 0
        self.calls: list[tuple[str, str]] = []

    def list_rule_groups(self) -> list[RuleGroup]:
        return list(self.groups.values())

    def upsert_rule_group(self, group: RuleGroup) -> None:
        self.calls.append(("upsert", group.name))
        if group.name in self.fail_on:
            raise GuardSyncError(f"cannot write {group.name}")
        self.groups[group.name] = group

    def remove_rule_group(self, name: str) -> None:
        self.calls.append(("remove", name))
        if name in self.fail_on:
            raise GuardSyncError(f"cannot remove {name}")
        del self.groups[name]

    def reload(self) -> None:
        self.reloads += 1

    def is_active(self) -> bool:
        return self.active


class FakeFirewall:
    """In-memory FirewallControl; rules from prefixes in ``fail_on`` fail to apply."""

    def __init__(self, rules=(), fail_on=()) -> None:
        self.rules = {r.key: r for r in rules}
        self.fail_on = set(fail_on)
        self.calls: list[tuple[str, str]] = []
        self.on_call = None

    def list_rules(self) -> list[FirewallRule]:
        return list(self.rules.values())

    def add_rule(self, rule: FirewallRule) -> None:
        self.calls.append(("add", str(rule)))
        if self.on_call:
            self.on_call()
        if rule.network_prefix in self.fail_on:
            raise CommandError(["ufw", "allow"], "ERROR: Could not update running firewall")
        self.rules[rule.key] = rule

    def remove_rule(self, rule: FirewallRule) -> None:
        self.calls.append(("remove", str(rule)))
        if rule.network_prefix in self.fail_on:
            raise CommandError(["ufw", "delete"], "ERROR: Could not delete rule")
        self.rules.pop(rule.key, None)


class FakeChecker:
    """ServiceChecker answering from a fixed set of active unit names."""

    authoritative = True

    def __init__(self, active=()) -> None:
        self.active = set(active)
        self.asked: list[str] = []

    def is_active(self, unit: str) -> bool:
        self.asked.append(unit)
        return unit in self.active


def feed_fetcher(document, status_code: int = 200, **kwargs) -> AllowListFetcher:
    """An AllowListFetcher whose HTTP responses come from a MockTransport."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=document)

    return AllowListFetcher(transport=httpx.MockTransport(handler), **kwargs)


@pytest.fixture
def fake_daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def fake_firewall() -> FakeFirewall:
    return FakeFirewall()


@pytest.fixture
def fake_checker() -> FakeChecker:
    return FakeChecker()


@pytest.fixture
def make_fetcher():
    return feed_fetcher


@pytest.fixture
def default_catalog() -> RuleCatalog:
    return load_default_catalog()


@pytest.fixture
def small_catalog() -> RuleCatalog:
    return RuleCatalog(
        base=(
            RuleGroup(
                name="sshd",
                match_spec=MatchSpec(filter="sshd", backend="systemd"),
                threshold=Threshold(3, 600),
            ),
        ),
        services={
            "caddy-bots": RuleGroup(
                name="caddy-bots",
                match_spec=MatchSpec(failregex=('"remote_ip":"<HOST>".*"status":404',)),
                threshold=Threshold(5, 60),
                ban_duration_seconds=604800,
                ban_duration_max_seconds=2592000,
                escalating=True,
                action_scope=ActionScope.ALL_PORTS,
            ),
            "db-auth": RuleGroup(
                name="db-auth",
                match_spec=MatchSpec(failregex=(".*Access denied for.*from <HOST>.*",)),
            ),
        },
        name="small",
    )


@pytest.fixture
def fail2ban_root(tmp_path: Path) -> Path:
    root = tmp_path / "fail2ban"
    (root / "jail.d").mkdir(parents=True)
    (root / "filter.d").mkdir()
    return root
