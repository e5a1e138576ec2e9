"""Pass result models: what one reconciliation pass did and how it ended."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from guardsync.apply import ApplyResult
from guardsync.policy.models import ReconcilePlan, ServiceSignal


class PassStatus(enum.Enum):
    """Terminal state of a pass."""

    CONVERGED = "converged"
    PARTIAL = "partial"
    ABORTED = "aborted"
    PLANNED = "planned"


_EXIT_CODES = {
    PassStatus.CONVERGED: 0,
    PassStatus.PLANNED: 0,
    PassStatus.PARTIAL: 1,
    PassStatus.ABORTED: 2,
}


@dataclass
class PassResult:
    """Structured outcome of a pass, returned even when the pass fails."""

    status: PassStatus = PassStatus.ABORTED
    dry_run: bool = False
    signals: tuple[ServiceSignal, ...] = ()
    allow_entries: int = 0
    plan: ReconcilePlan | None = None
    apply_result: ApplyResult | None = None
    reason: str = ""
    error_kind: str = ""
    forwarding_changed: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.status]

    @property
    def error_messages(self) -> list[str]:
        messages = [str(e) for e in self.apply_result.errors] if self.apply_result else []
        if self.reason and self.status is PassStatus.ABORTED:
            messages.insert(0, self.reason)
        return messages

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "dry_run": self.dry_run,
            "signals": [{"kind": s.kind.value, "flavor": s.flavor} for s in self.signals],
            "allow_entries": self.allow_entries,
            "plan": self.plan.to_dict() if self.plan else None,
            "errors": self.error_messages,
            "error_kind": self.error_kind,
            "forwarding_changed": self.forwarding_changed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
