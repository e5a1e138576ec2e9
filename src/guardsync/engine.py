"""Pass runner: orchestrates probe, fetch, synthesize, reconcile and apply."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from guardsync.apply import Applier, ApplyResult
from guardsync.config import GuardSyncConfig
from guardsync.errors import (
    ApplyError,
    FetchError,
    FetchErrorKind,
    GuardSyncError,
    LockHeldError,
    ProbeError,
)
from guardsync.fetch import AllowListFetcher
from guardsync.lock import pass_lock
from guardsync.policy.loader import load_catalog, load_default_catalog
from guardsync.policy.models import RuleCatalog
from guardsync.policy.synthesizer import synthesize
from guardsync.probe import EnvironmentProber, make_checker
from guardsync.reconcile import reconcile
from guardsync.results import PassResult, PassStatus
from guardsync.runner import CommandRunner
from guardsync.targets.base import DaemonControl, FirewallControl
from guardsync.targets.fail2ban import Fail2banControl
from guardsync.targets.firewall import make_firewall
from guardsync.targets.forwarding import LogForwarder

logger = logging.getLogger(__name__)


class _Abort(Exception):
    """Ends a pass early; carries the reason into the PassResult."""

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(reason)
        self.kind = kind
        self.reason = reason


class PassRunner:
    """Runs reconciliation passes against one daemon and one firewall."""

    def __init__(
        self,
        prober: EnvironmentProber,
        fetcher: AllowListFetcher,
        daemon: DaemonControl,
        firewall: FirewallControl,
        catalog: RuleCatalog,
        source_url: str,
        lock_path: str | Path,
        fetch_timeout: float = 10.0,
        ports: tuple[int, ...] = (80, 443),
        owner_prefix: str = "guardsync-",
        label: str = "guardsync",
        dry_run: bool = False,
        parallel: bool = False,
        forwarder: LogForwarder | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        if not ports:
            raise ValueError("At least one allowed port is required")
        self._prober = prober
        self._fetcher = fetcher
        self._daemon = daemon
        self._firewall = firewall
        self._catalog = catalog
        self._source_url = source_url
        self._lock_path = Path(lock_path)
        self._fetch_timeout = fetch_timeout
        self._ports = ports
        self._owner_prefix = owner_prefix
        self._label = label
        self._dry_run = dry_run
        self._forwarder = forwarder
        self._stop_event = stop_event or threading.Event()
        self._applier = Applier(
            daemon, firewall, stop_event=self._stop_event, parallel=parallel
        )

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        """Cancel the pass in flight and end run_forever()."""
        self._stop_event.set()

    def run(self) -> PassResult:
        """Run one pass. Never raises: failures end up in the PassResult."""
        result = PassResult(dry_run=self._dry_run)
        try:
            with pass_lock(self._lock_path):
                self._run_locked(result)
        except LockHeldError as e:
            self._abort(result, "lock", str(e))
        except _Abort as e:
            self._abort(result, e.kind, e.reason)
        except Exception as e:  # noqa: BLE001
            logger.exception("Pass failed unexpectedly")
            self._abort(result, "internal", f"{type(e).__name__}: {e}")
        finally:
            result.finished_at = time.time()

        logger.info("Pass %s finished: %s", result.id, result.status.value)
        return result

    def run_forever(
        self,
        interval: float,
        on_result: Callable[[PassResult], None] | None = None,
    ) -> None:
        """Repeat passes every *interval* seconds until stop()."""
        self._stop_event.clear()
        while not self._stop_event.is_set():
            result = self.run()
            if on_result:
                on_result(result)
            self._stop_event.wait(timeout=interval)

    def _run_locked(self, result: PassResult) -> None:
        try:
            signals = self._prober.probe()
        except ProbeError as e:
            raise _Abort("probe", f"Service probe failed: {e}") from e
        result.signals = tuple(sorted(signals, key=lambda s: (s.kind.value, s.flavor)))

        try:
            entries = self._fetcher.fetch(self._source_url, timeout=self._fetch_timeout)
        except FetchError as e:
            if e.kind is FetchErrorKind.EMPTY:
                logger.error("Allow-list is empty; refusing to touch firewall rules")
            else:
                logger.warning("Allow-list fetch failed, retrying next pass: %s", e)
            raise _Abort(f"fetch:{e.kind.value}", f"Allow-list fetch failed: {e}") from e
        result.allow_entries = len(entries)

        desired = synthesize(
            signals,
            entries,
            self._catalog,
            ports=self._ports,
            owner_prefix=self._owner_prefix,
            label=self._label,
        )

        try:
            current_groups = self._daemon.list_rule_groups()
            current_rules = self._firewall.list_rules()
        except (GuardSyncError, OSError) as e:
            raise _Abort("state", f"Cannot read current state: {e}") from e

        try:
            plan = reconcile(
                desired,
                current_groups,
                current_rules,
                owner_prefix=self._owner_prefix,
                label=self._label,
            )
        except ValueError as e:
            raise _Abort("config", str(e)) from e
        result.plan = plan

        if self._dry_run:
            result.status = PassStatus.PLANNED
            return

        apply_result = ApplyResult() if plan.is_empty else self._applier.apply(plan)
        if self._forwarder is not None and not self._stop_event.is_set():
            self._ensure_forwarding(self._forwarder, result, apply_result)
        result.apply_result = apply_result

        if apply_result.ok and not apply_result.cancelled:
            result.status = PassStatus.CONVERGED
        else:
            result.status = PassStatus.PARTIAL
            logger.warning("Pass %s left %d error(s)", result.id, len(apply_result.errors))

    def _ensure_forwarding(
        self, forwarder: LogForwarder, result: PassResult, apply_result: ApplyResult
    ) -> None:
        try:
            forwarding = forwarder.ensure()
        except (GuardSyncError, OSError) as e:
            logger.error("Log forwarding setup failed: %s", e)
            apply_result.errors.append(
                ApplyError("forwarding", "ensure", "log forwarding", str(e))
            )
            return
        result.forwarding_changed = [str(p) for p in forwarding.changed]

    @staticmethod
    def _abort(result: PassResult, kind: str, reason: str) -> None:
        result.status = PassStatus.ABORTED
        result.error_kind = kind
        result.reason = reason
        logger.error("Pass %s aborted: %s", result.id, reason)


def load_rules(config: GuardSyncConfig) -> RuleCatalog:
    """The configured rule catalog, or the built-in preset."""
    if config.rules_path:
        return load_catalog(config.rules_path)
    return load_default_catalog()


def build_runner(
    config: GuardSyncConfig,
    dry_run: bool = False,
    parallel: bool = False,
    source_url: str | None = None,
    stop_event: threading.Event | None = None,
) -> PassRunner:
    """Wire a PassRunner to the real host from config."""
    runner = CommandRunner(timeout=config.command_timeout)
    daemon = Fail2banControl(
        root=config.fail2ban_dir,
        owner_prefix=config.owner_prefix,
        ignore_ips=config.ignore_ips,
        runner=runner,
    )
    forwarder = None
    if config.forward_logs:
        forwarder = LogForwarder(
            daemon,
            fail2ban_dir=config.fail2ban_dir,
            rsyslog_dir=config.rsyslog_dir,
            runner=runner,
        )

    return PassRunner(
        prober=EnvironmentProber(make_checker(config.service_checker, runner)),
        fetcher=AllowListFetcher(
            ports=config.allowed_ports,
            label=config.firewall_label,
            list_key=config.allowlist_list_key,
            prefix_field=config.allowlist_prefix_field,
        ),
        daemon=daemon,
        firewall=make_firewall(config.firewall_backend, runner),
        catalog=load_rules(config),
        source_url=source_url or config.allowlist_url,
        lock_path=config.effective_lock_path,
        fetch_timeout=config.fetch_timeout,
        ports=config.allowed_ports,
        owner_prefix=config.owner_prefix,
        label=config.firewall_label,
        dry_run=dry_run,
        parallel=parallel,
        forwarder=forwarder,
        stop_event=stop_event,
    )
