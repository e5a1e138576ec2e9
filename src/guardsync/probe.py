"""Environment prober: which web server and database are active on this host.

Detection goes through a ``ServiceChecker`` so it can be swapped for a fake in
tests. Candidates are checked in priority order and the first active one wins,
since a host is assumed to run one primary web server and one primary
database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import psutil

from guardsync.errors import CommandError, ProbeError
from guardsync.policy.models import ServiceKind, ServiceSignal
from guardsync.runner import CommandRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceCandidate:
    """A service flavor and the unit names that count as it being active."""

    kind: ServiceKind
    flavor: str
    units: tuple[str, ...]


# Priority order matters: first active candidate of each kind wins.
WEB_CANDIDATES: tuple[ServiceCandidate, ...] = (
    ServiceCandidate(ServiceKind.WEB, "nginx", ("nginx",)),
    ServiceCandidate(ServiceKind.WEB, "caddy", ("caddy",)),
    ServiceCandidate(ServiceKind.WEB, "apache", ("apache2", "httpd")),
)

DATABASE_CANDIDATES: tuple[ServiceCandidate, ...] = (
    ServiceCandidate(ServiceKind.DATABASE, "postgresql", ("postgresql",)),
    ServiceCandidate(ServiceKind.DATABASE, "mysql", ("mysql", "mariadb")),
    ServiceCandidate(ServiceKind.DATABASE, "mongodb", ("mongodb", "mongod")),
    ServiceCandidate(ServiceKind.DATABASE, "redis", ("redis", "redis-server")),
)

# Unit name -> process names it runs as, for hosts without a service manager
_PROCESS_NAMES: dict[str, tuple[str, ...]] = {
    "nginx": ("nginx",),
    "caddy": ("caddy",),
    "apache2": ("apache2",),
    "httpd": ("httpd",),
    "postgresql": ("postgres", "postmaster"),
    "mysql": ("mysqld",),
    "mariadb": ("mariadbd", "mysqld"),
    "mongodb": ("mongod",),
    "mongod": ("mongod",),
    "redis": ("redis-server",),
    "redis-server": ("redis-server",),
}


class ServiceChecker(Protocol):
    """Answers whether a named service is currently active."""

    authoritative: bool

    def is_active(self, unit: str) -> bool:
        """Return True if *unit* is running. Raise ProbeError if the answer is unknowable."""
        ...


class SystemdChecker:
    """Asks systemd via ``systemctl is-active``."""

    authoritative = True

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner(timeout=10.0)

    def is_active(self, unit: str) -> bool:
        try:
            proc = self._runner.run(
                ["systemctl", "is-active", "--quiet", unit], check=False
            )
        except CommandError as e:
            raise ProbeError(f"Cannot query systemd: {e.message}") from e

        if "Failed to connect to bus" in proc.stderr:
            raise ProbeError(f"Cannot query systemd: {proc.stderr.strip()}")
        return proc.returncode == 0


class ProcessChecker:
    """Looks for the service's process in the process table (psutil)."""

    authoritative = False

    def __init__(self) -> None:
        self._names: set[str] | None = None

    def is_active(self, unit: str) -> bool:
        names = self._process_names()
        return any(n in names for n in _PROCESS_NAMES.get(unit, (unit,)))

    def _process_names(self) -> set[str]:
        # One snapshot per checker so every candidate sees the same table
        if self._names is None:
            try:
                self._names = {
                    p.info["name"]
                    for p in psutil.process_iter(["name"])
                    if p.info.get("name")
                }
            except psutil.Error as e:
                raise ProbeError(f"Cannot read process table: {e}") from e
        return self._names


class EnvironmentProber:
    """Produces at most one web and one database signal per probe."""

    def __init__(
        self,
        checker: ServiceChecker,
        web_candidates: tuple[ServiceCandidate, ...] = WEB_CANDIDATES,
        database_candidates: tuple[ServiceCandidate, ...] = DATABASE_CANDIDATES,
    ) -> None:
        self._checker = checker
        self._groups = (web_candidates, database_candidates)

    def probe(self) -> frozenset[ServiceSignal]:
        signals: set[ServiceSignal] = set()
        for candidates in self._groups:
            signal = self._first_active(candidates)
            if signal is not None:
                signals.add(signal)
        return frozenset(signals)

    def _first_active(
        self, candidates: tuple[ServiceCandidate, ...]
    ) -> ServiceSignal | None:
        for candidate in candidates:
            for unit in candidate.units:
                if self._checker.is_active(unit):
                    logger.info(
                        "Detected %s service: %s (unit %s)",
                        candidate.kind.value,
                        candidate.flavor,
                        unit,
                    )
                    return ServiceSignal(
                        kind=candidate.kind,
                        flavor=candidate.flavor,
                        confidence=self._checker.authoritative,
                    )
        return None


def make_checker(name: str, runner: CommandRunner | None = None) -> ServiceChecker:
    """Build the checker named in config (``systemd`` or ``process``)."""
    if name == "systemd":
        return SystemdChecker(runner)
    if name == "process":
        return ProcessChecker()
    raise ValueError(f"Unknown service checker: {name}")
