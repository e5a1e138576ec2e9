"""Repository classes for async CRUD operations on SQLite."""

from __future__ import annotations

import aiosqlite

from guardsync.results import PassResult


class PassRepo:
    """History of reconciliation passes."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, result: PassResult) -> None:
        plan = result.plan
        await self._db.execute(
            "INSERT INTO passes "
            "(id, status, exit_code, dry_run, signals, allow_entries, "
            "daemon_adds, daemon_removes, firewall_adds, firewall_removes, "
            "error_kind, started_at, finished_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                result.id,
                result.status.value,
                result.exit_code,
                int(result.dry_run),
                ",".join(f"{s.kind.value}:{s.flavor}" for s in result.signals),
                result.allow_entries,
                len(plan.daemon_adds) if plan else 0,
                len(plan.daemon_removes) if plan else 0,
                len(plan.firewall_adds) if plan else 0,
                len(plan.firewall_removes) if plan else 0,
                result.error_kind,
                result.started_at,
                result.finished_at,
            ),
        )
        await self._db.executemany(
            "INSERT INTO pass_errors (pass_id, message) VALUES (?, ?)",
            [(result.id, message) for message in result.error_messages],
        )
        await self._db.commit()

    async def get(self, pass_id: str) -> dict | None:
        cursor = await self._db.execute("SELECT * FROM passes WHERE id = ?", (pass_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        result = dict(row)
        result["errors"] = await self._errors(pass_id)
        return result

    async def list_recent(self, limit: int = 20) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT p.*, COUNT(e.id) AS error_count FROM passes p "
            "LEFT JOIN pass_errors e ON e.pass_id = p.id "
            "GROUP BY p.id ORDER BY p.started_at DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) async for row in cursor]

    async def _errors(self, pass_id: str) -> list[str]:
        cursor = await self._db.execute(
            "SELECT message FROM pass_errors WHERE pass_id = ? ORDER BY id",
            (pass_id,),
        )
        return [row["message"] async for row in cursor]
