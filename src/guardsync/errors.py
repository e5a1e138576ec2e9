"""Exception types raised across a reconciliation pass."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class GuardSyncError(Exception):
    """Base class for all guardsync errors."""


class ProbeError(GuardSyncError):
    """The service-state capability itself could not be queried."""


class FetchErrorKind(enum.Enum):
    """Why an allow-list fetch failed."""

    NETWORK = "network"
    PARSE = "parse"
    EMPTY = "empty"


class FetchError(GuardSyncError):
    """The allow-list feed could not be turned into a usable entry list."""

    def __init__(self, kind: FetchErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind is not FetchErrorKind.EMPTY


class LockHeldError(GuardSyncError):
    """Another pass already holds the reconciliation lock."""


class CommandError(GuardSyncError):
    """An external control command failed, was missing, or timed out."""

    def __init__(self, command: list[str], message: str, returncode: int | None = None) -> None:
        super().__init__(f"{' '.join(command)}: {message}")
        self.command = command
        self.message = message
        self.returncode = returncode


@dataclass(frozen=True)
class ApplyError:
    """A single operation the Applier could not complete."""

    target: str
    operation: str
    subject: str
    message: str

    def __str__(self) -> str:
        return f"[{self.target}] {self.operation} {self.subject}: {self.message}"
