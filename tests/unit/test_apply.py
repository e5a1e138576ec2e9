"""Tests for the applier."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

from guardsync.apply import Applier
from guardsync.errors import GuardSyncError
from guardsync.policy.models import FirewallRule, ReconcilePlan, RuleGroup


def _rules(*prefixes: str) -> tuple[FirewallRule, ...]:
    return tuple(FirewallRule(p, 443, "guardsync") for p in prefixes)


def test_one_of_three_firewall_adds_fails(fake_daemon, fake_firewall):
    fake_firewall.fail_on = {"2.2.2.0/24"}
    plan = ReconcilePlan(firewall_adds=_rules("1.1.1.0/24", "2.2.2.0/24", "3.3.3.0/24"))

    result = Applier(fake_daemon, fake_firewall).apply(plan)

    assert not result.firewall_ok
    assert result.daemon_ok
    assert [(e.target, e.operation, e.subject) for e in result.errors] == [
        ("firewall", "add", "2.2.2.0/24 -> 443 (guardsync)")
    ]
    present = {r.network_prefix for r in fake_firewall.list_rules()}
    assert present == {"1.1.1.0/24", "3.3.3.0/24"}
    assert len(result.succeeded) == 2


def test_daemon_changes_reload_and_verify(fake_daemon, fake_firewall):
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-sshd"),),
        daemon_removes=("guardsync-old",),
    )
    fake_daemon.groups["guardsync-old"] = RuleGroup(name="guardsync-old")

    result = Applier(fake_daemon, fake_firewall).apply(plan)

    assert result.ok
    assert fake_daemon.calls == [("remove", "guardsync-old"), ("upsert", "guardsync-sshd")]
    assert fake_daemon.reloads == 1


def test_no_reload_when_nothing_changed(fake_daemon, fake_firewall):
    result = Applier(fake_daemon, fake_firewall).apply(ReconcilePlan(firewall_adds=_rules("1.1.1.0/24")))
    assert result.ok
    assert fake_daemon.reloads == 0


def test_inactive_daemon_after_reload(fake_daemon, fake_firewall):
    fake_daemon.active = False
    plan = ReconcilePlan(daemon_adds=(RuleGroup(name="guardsync-sshd"),))

    result = Applier(fake_daemon, fake_firewall).apply(plan)

    assert not result.daemon_ok
    assert result.firewall_ok
    assert result.errors[0].operation == "verify"


def test_reload_failure_is_reported():
    daemon = MagicMock()
    daemon.reload.side_effect = GuardSyncError("fail2ban-client reload: exit code 255")
    firewall = MagicMock()
    firewall.list_rules.return_value = []
    plan = ReconcilePlan(daemon_adds=(RuleGroup(name="guardsync-sshd"),))

    result = Applier(daemon, firewall).apply(plan)

    assert not result.daemon_ok
    assert result.errors[0].subject == "reload"
    daemon.is_active.assert_not_called()


def test_daemon_failure_does_not_stop_firewall(fake_daemon, fake_firewall):
    fake_daemon.fail_on = {"guardsync-sshd"}
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-sshd"),),
        firewall_adds=_rules("1.1.1.0/24"),
    )

    result = Applier(fake_daemon, fake_firewall).apply(plan)

    assert not result.daemon_ok
    assert result.firewall_ok
    assert len(fake_firewall.list_rules()) == 1


def test_firewall_verify_catches_silent_failure():
    firewall = MagicMock()
    firewall.list_rules.return_value = []
    plan = ReconcilePlan(firewall_adds=_rules("1.1.1.0/24"))

    result = Applier(MagicMock(), firewall).apply(plan)

    assert not result.firewall_ok
    assert result.errors[0].operation == "verify"
    assert result.errors[0].message == "missing after add"


def test_removes_run_before_adds(fake_daemon, fake_firewall):
    stale = FirewallRule("9.9.9.0/24", 443, "guardsync")
    fake_firewall.rules[stale.key] = stale
    plan = ReconcilePlan(firewall_adds=_rules("1.1.1.0/24"), firewall_removes=(stale,))

    Applier(fake_daemon, fake_firewall).apply(plan)

    assert [op for op, _ in fake_firewall.calls] == ["remove", "add"]


def test_cancellation_between_operations(fake_daemon, fake_firewall):
    stop = threading.Event()
    fake_firewall.on_call = stop.set
    plan = ReconcilePlan(
        firewall_adds=_rules("1.1.1.0/24", "2.2.2.0/24", "3.3.3.0/24"),
    )

    result = Applier(fake_daemon, fake_firewall, stop_event=stop).apply(plan)

    # The in-flight add completes, the rest are recorded as cancelled
    assert result.cancelled
    assert len(fake_firewall.list_rules()) == 1
    assert [e.message for e in result.errors] == ["cancelled", "cancelled"]


def test_cancelled_before_start_skips_units(fake_daemon, fake_firewall):
    stop = threading.Event()
    stop.set()
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-sshd"),),
        firewall_adds=_rules("1.1.1.0/24"),
    )

    result = Applier(fake_daemon, fake_firewall, stop_event=stop).apply(plan)

    assert result.cancelled
    assert not result.ok
    assert fake_daemon.calls == []
    assert fake_firewall.calls == []


def test_parallel_units(fake_daemon, fake_firewall):
    fake_firewall.fail_on = {"2.2.2.0/24"}
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-sshd"),),
        firewall_adds=_rules("1.1.1.0/24", "2.2.2.0/24"),
    )

    result = Applier(fake_daemon, fake_firewall, parallel=True).apply(plan)

    assert result.daemon_ok
    assert not result.firewall_ok
    assert "guardsync-sshd" in fake_daemon.groups
    assert len(result.errors) == 1


def test_parallel_unexpected_error_is_contained(fake_firewall):
    daemon = MagicMock()
    daemon.upsert_rule_group.side_effect = RuntimeError("boom")
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-sshd"),),
        firewall_adds=_rules("1.1.1.0/24"),
    )

    result = Applier(daemon, fake_firewall, parallel=True).apply(plan)

    assert not result.daemon_ok
    assert result.firewall_ok
    assert "boom" in result.errors[0].message


def test_unexpected_error_does_not_stop_firewall(fake_firewall):
    daemon = MagicMock()
    daemon.upsert_rule_group.side_effect = [None, RuntimeError("boom")]
    daemon.is_active.return_value = True
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-a"), RuleGroup(name="guardsync-b")),
        firewall_adds=_rules("1.1.1.0/24"),
    )

    result = Applier(daemon, fake_firewall).apply(plan)

    assert not result.daemon_ok
    assert result.firewall_ok
    assert [e.subject for e in result.errors] == ["guardsync-b"]
    assert "boom" in result.errors[0].message
    done = {(op.target, op.subject) for op in result.succeeded}
    assert ("daemon", "guardsync-a") in done
    assert ("firewall", str(_rules("1.1.1.0/24")[0])) in done


def test_unexpected_verify_error_fails_only_its_unit(fake_firewall):
    daemon = MagicMock()
    daemon.reload.side_effect = RuntimeError("socket gone")
    plan = ReconcilePlan(
        daemon_adds=(RuleGroup(name="guardsync-sshd"),),
        firewall_adds=_rules("1.1.1.0/24"),
    )

    result = Applier(daemon, fake_firewall).apply(plan)

    assert not result.daemon_ok
    assert result.firewall_ok
    assert fake_firewall.calls == [("add", str(_rules("1.1.1.0/24")[0]))]
    assert "socket gone" in result.errors[0].message
