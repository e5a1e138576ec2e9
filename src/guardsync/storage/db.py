"""SQLite database connection management and schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS passes (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    exit_code INTEGER NOT NULL,
    dry_run INTEGER NOT NULL DEFAULT 0,
    signals TEXT NOT NULL DEFAULT '',
    allow_entries INTEGER NOT NULL DEFAULT 0,
    daemon_adds INTEGER NOT NULL DEFAULT 0,
    daemon_removes INTEGER NOT NULL DEFAULT 0,
    firewall_adds INTEGER NOT NULL DEFAULT 0,
    firewall_removes INTEGER NOT NULL DEFAULT 0,
    error_kind TEXT NOT NULL DEFAULT '',
    started_at REAL NOT NULL,
    finished_at REAL
);

CREATE TABLE IF NOT EXISTS pass_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pass_id TEXT NOT NULL,
    message TEXT NOT NULL,
    FOREIGN KEY (pass_id) REFERENCES passes(id)
);

CREATE INDEX IF NOT EXISTS idx_passes_started
    ON passes(started_at);
CREATE INDEX IF NOT EXISTS idx_errors_pass
    ON pass_errors(pass_id);
"""


async def get_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open (or create) the database and run migrations."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")

    await _migrate(db)
    return db


async def _migrate(db: aiosqlite.Connection) -> None:
    """Create the schema on first use; refuse databases from a newer release."""
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )
    row = await cursor.fetchone()

    if row is None:
        await db.executescript(SCHEMA_SQL)
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await db.commit()
        logger.info("Database initialized at schema version %d", SCHEMA_VERSION)
        return

    cursor = await db.execute("SELECT version FROM schema_version")
    row = await cursor.fetchone()
    current = row[0] if row else 0

    if current > SCHEMA_VERSION:
        await db.close()
        raise RuntimeError(
            f"Database schema version {current} is newer than supported "
            f"version {SCHEMA_VERSION}"
        )
