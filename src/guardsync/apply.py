"""Applier: execute a ReconcilePlan against the daemon and the firewall.

Each target is one sequential unit (apply, then verify). The units are
independent: a failure in one never stops the other. Nothing is rolled back;
the next pass re-reconciles whatever is still divergent.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from guardsync.errors import ApplyError, GuardSyncError
from guardsync.policy.models import FirewallRule, ReconcilePlan
from guardsync.targets.base import DaemonControl, FirewallControl

logger = logging.getLogger(__name__)

DAEMON = "daemon"
FIREWALL = "firewall"


@dataclass(frozen=True)
class AppliedOperation:
    """An operation that completed successfully."""

    target: str
    operation: str
    subject: str


@dataclass
class ApplyResult:
    """Outcome of applying one plan."""

    daemon_ok: bool = True
    firewall_ok: bool = True
    errors: list[ApplyError] = field(default_factory=list)
    succeeded: list[AppliedOperation] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.daemon_ok and self.firewall_ok and not self.errors


@dataclass
class _UnitReport:
    """What one target's unit did; merged into ApplyResult afterwards."""

    target: str
    errors: list[ApplyError] = field(default_factory=list)
    succeeded: list[AppliedOperation] = field(default_factory=list)
    cancelled: bool = False

    def ok(self, operation: str, subject: str) -> None:
        self.succeeded.append(AppliedOperation(self.target, operation, subject))

    def fail(self, operation: str, subject: str, message: str) -> None:
        logger.error("%s %s %s failed: %s", self.target, operation, subject, message)
        self.errors.append(ApplyError(self.target, operation, subject, message))


class Applier:
    """Applies plans to one daemon and one firewall backend."""

    def __init__(
        self,
        daemon: DaemonControl,
        firewall: FirewallControl,
        stop_event: threading.Event | None = None,
        parallel: bool = False,
        settle_seconds: float = 0.0,
    ) -> None:
        self._daemon = daemon
        self._firewall = firewall
        self._stop_event = stop_event or threading.Event()
        self._parallel = parallel
        self._settle_seconds = settle_seconds

    def apply(self, plan: ReconcilePlan) -> ApplyResult:
        units: list[tuple[str, Callable[[ReconcilePlan], _UnitReport]]] = [
            (DAEMON, self._apply_daemon),
            (FIREWALL, self._apply_firewall),
        ]
        if self._parallel:
            reports = self._run_parallel(plan, units)
        else:
            reports = []
            for target, unit in units:
                if self._stop_event.is_set():
                    logger.warning("Cancelled before applying %s changes", target)
                    reports.append(_UnitReport(target=target, cancelled=True))
                    continue
                reports.append(self._run_unit(target, unit, plan))

        result = ApplyResult()
        for report in reports:
            result.errors.extend(report.errors)
            result.succeeded.extend(report.succeeded)
            result.cancelled = result.cancelled or report.cancelled
            target_ok = not report.errors and not report.cancelled
            if report.target == DAEMON:
                result.daemon_ok = target_ok
            else:
                result.firewall_ok = target_ok
        return result

    def _run_parallel(
        self,
        plan: ReconcilePlan,
        units: list[tuple[str, Callable[[ReconcilePlan], _UnitReport]]],
    ) -> list[_UnitReport]:
        reports: dict[str, _UnitReport] = {}

        def _run(target: str, unit: Callable[[ReconcilePlan], _UnitReport]) -> None:
            reports[target] = self._run_unit(target, unit, plan)

        threads = [
            threading.Thread(target=_run, args=(target, unit), name=f"apply-{target}")
            for target, unit in units
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return [reports[target] for target, _ in units]

    @staticmethod
    def _run_unit(
        target: str,
        unit: Callable[[ReconcilePlan], _UnitReport],
        plan: ReconcilePlan,
    ) -> _UnitReport:
        """Run one unit; an unexpected error fails that unit only."""
        try:
            return unit(plan)
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected error applying %s changes", target)
            report = _UnitReport(target=target)
            report.fail("apply", target, f"unexpected error: {e}")
            return report

    # -- daemon ---------------------------------------------------------

    def _apply_daemon(self, plan: ReconcilePlan) -> _UnitReport:
        report = _UnitReport(target=DAEMON)
        ops: list[tuple[str, str, Callable[[], None]]] = []
        for name in plan.daemon_removes:
            ops.append(("remove", name, lambda n=name: self._daemon.remove_rule_group(n)))
        for group in plan.daemon_adds:
            ops.append(("upsert", group.name, lambda g=group: self._daemon.upsert_rule_group(g)))

        self._run_ops(report, ops)
        if report.succeeded:
            self._verify_daemon(report)
        return report

    def _verify_daemon(self, report: _UnitReport) -> None:
        try:
            self._daemon.reload()
        except (GuardSyncError, OSError) as e:
            report.fail("verify", "reload", str(e))
            return
        if self._settle_seconds:
            time.sleep(self._settle_seconds)
        try:
            active = self._daemon.is_active()
        except (GuardSyncError, OSError) as e:
            report.fail("verify", "is_active", str(e))
            return
        if not active:
            report.fail("verify", "is_active", "daemon is not active after reload")

    # -- firewall -------------------------------------------------------

    def _apply_firewall(self, plan: ReconcilePlan) -> _UnitReport:
        report = _UnitReport(target=FIREWALL)
        ops: list[tuple[str, str, Callable[[], None]]] = []
        for rule in plan.firewall_removes:
            ops.append(("remove", str(rule), lambda r=rule: self._firewall.remove_rule(r)))
        for rule in plan.firewall_adds:
            ops.append(("add", str(rule), lambda r=rule: self._firewall.add_rule(r)))

        self._run_ops(report, ops)
        if report.succeeded:
            self._verify_firewall(plan, report)
        return report

    def _verify_firewall(self, plan: ReconcilePlan, report: _UnitReport) -> None:
        try:
            present = {r.key for r in self._firewall.list_rules()}
        except (GuardSyncError, OSError) as e:
            report.fail("verify", "list_rules", str(e))
            return

        done = {(op.operation, op.subject) for op in report.succeeded}
        expected: list[tuple[FirewallRule, bool]] = [
            (r, True) for r in plan.firewall_adds if ("add", str(r)) in done
        ] + [(r, False) for r in plan.firewall_removes if ("remove", str(r)) in done]
        for rule, should_exist in expected:
            if (rule.key in present) != should_exist:
                state = "missing after add" if should_exist else "still present after remove"
                report.fail("verify", str(rule), state)

    # -- shared ---------------------------------------------------------

    def _run_ops(
        self,
        report: _UnitReport,
        ops: list[tuple[str, str, Callable[[], None]]],
    ) -> None:
        for index, (operation, subject, call) in enumerate(ops):
            # The in-flight operation always completes; cancellation takes effect between ops
            if self._stop_event.is_set():
                report.cancelled = True
                for skipped_op, skipped_subject, _ in ops[index:]:
                    report.fail(skipped_op, skipped_subject, "cancelled")
                return
            try:
                call()
            except (GuardSyncError, OSError) as e:
                report.fail(operation, subject, str(e))
                continue
            except Exception as e:  # noqa: BLE001
                logger.exception("Unexpected error during %s %s", operation, subject)
                report.fail(operation, subject, f"unexpected error: {e}")
                continue
            report.ok(operation, subject)
