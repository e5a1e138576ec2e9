"""CLI command ``guardsync history``: list recent passes."""

from __future__ import annotations

import asyncio
import datetime
import sys

import click
from rich.markup import escape
from rich.table import Table

from guardsync.cli.common import console, load_config
from guardsync.storage.db import get_db
from guardsync.storage.repos import PassRepo


@click.command()
@click.option("--limit", "-n", type=int, default=20, help="Number of passes to show.")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """Show recently recorded passes."""
    try:
        config = load_config(ctx)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(2)
    if not config.db_path.is_file():
        console.print("[dim]No passes recorded yet.[/dim]")
        return

    async def _load() -> list[dict]:
        db = await get_db(config.db_path)
        try:
            return await PassRepo(db).list_recent(limit=limit)
        finally:
            await db.close()

    rows = asyncio.run(_load())
    if not rows:
        console.print("[dim]No passes recorded yet.[/dim]")
        return

    table = Table(title="Recent passes")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Started")
    table.add_column("Status", style="bold", no_wrap=True)
    table.add_column("Services")
    table.add_column("Changes")
    table.add_column("Errors", justify="right")
    for row in rows:
        started = datetime.datetime.fromtimestamp(row["started_at"])
        changes = (
            f"+{row['daemon_adds']}/-{row['daemon_removes']} "
            f"+{row['firewall_adds']}/-{row['firewall_removes']}"
        )
        table.add_row(
            row["id"],
            started.strftime("%m-%d %H:%M"),
            row["status"],
            row["signals"] or "-",
            changes,
            str(row["error_count"]),
        )
    console.print(table)
    console.print("[dim]Changes: daemon +/- then firewall +/-[/dim]")
