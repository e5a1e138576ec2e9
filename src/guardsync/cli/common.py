"""Helpers shared by the CLI commands."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from guardsync.config import GuardSyncConfig
from guardsync.results import PassResult, PassStatus

logger = logging.getLogger(__name__)

console = Console(stderr=True)

_STATUS_COLORS = {
    PassStatus.CONVERGED: "green",
    PassStatus.PLANNED: "cyan",
    PassStatus.PARTIAL: "yellow",
    PassStatus.ABORTED: "red",
}


def load_config(ctx: click.Context) -> GuardSyncConfig:
    """Config from the environment, with global CLI options applied."""
    config = GuardSyncConfig.load()
    rules_path = ctx.obj.get("rules_path") if ctx.obj else None
    if rules_path:
        config.rules_path = Path(rules_path)
    config.verbose = bool(ctx.obj and ctx.obj.get("verbose"))
    return config


def status_text(status: PassStatus) -> str:
    color = _STATUS_COLORS[status]
    return f"[{color}]{status.value}[/{color}]"


def print_result(result: PassResult) -> None:
    """Human summary of one pass on stderr."""
    if result.plan is not None:
        table = Table(title="Plan", show_lines=False)
        table.add_column("Target", style="bold")
        table.add_column("Op")
        table.add_column("Subject", style="cyan")
        for group in result.plan.daemon_adds:
            table.add_row("daemon", "upsert", group.name)
        for name in result.plan.daemon_removes:
            table.add_row("daemon", "remove", name)
        for rule in result.plan.firewall_adds:
            table.add_row("firewall", "add", str(rule))
        for rule in result.plan.firewall_removes:
            table.add_row("firewall", "remove", str(rule))
        if result.plan.is_empty:
            console.print("[green]Nothing to change.[/green]")
        else:
            console.print(table)

    for message in result.error_messages:
        console.print(f"  [red]error[/red] {escape(message)}")
    for path in result.forwarding_changed:
        console.print(f"  [dim]updated {path}[/dim]")

    signals = ", ".join(f"{s.kind.value}={s.flavor}" for s in result.signals) or "none"
    console.print(
        f"\nPass [bold]{result.id}[/bold]: {status_text(result.status)} "
        f"(services: {signals}, allow-list prefixes: {result.allow_entries})"
    )


def dump_yaml(result: PassResult) -> None:
    click.echo(yaml.safe_dump(result.to_dict(), sort_keys=False))


def record_pass(db_path: Path, result: PassResult) -> None:
    """Append a pass to the history database. History is best effort."""
    from guardsync.storage.db import get_db
    from guardsync.storage.repos import PassRepo

    async def _record() -> None:
        db = await get_db(db_path)
        try:
            await PassRepo(db).create(result)
        finally:
            await db.close()

    try:
        asyncio.run(_record())
    except (sqlite3.Error, OSError, RuntimeError) as e:
        logger.warning("Could not record pass %s in %s: %s", result.id, db_path, e)
