"""CLI command ``guardsync probe``: show which services are detected."""

from __future__ import annotations

import sys

import click
from rich.markup import escape
from rich.table import Table

from guardsync.cli.common import console, load_config
from guardsync.errors import ProbeError
from guardsync.probe import EnvironmentProber, make_checker
from guardsync.runner import CommandRunner


@click.command()
@click.option(
    "--checker",
    type=click.Choice(["systemd", "process"]),
    default=None,
    help="Service checker to use (default: from config).",
)
@click.pass_context
def probe(ctx: click.Context, checker: str | None) -> None:
    """Detect the active web server and database."""
    try:
        config = load_config(ctx)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(2)
    name = checker or config.service_checker
    try:
        prober = EnvironmentProber(
            make_checker(name, CommandRunner(timeout=config.command_timeout))
        )
        signals = prober.probe()
    except (ProbeError, ValueError) as e:
        console.print(f"[red]Probe failed:[/red] {escape(str(e))}")
        sys.exit(2)

    if not signals:
        console.print("[dim]No web server or database detected.[/dim]")
        return

    table = Table(show_header=True)
    table.add_column("Kind", style="bold")
    table.add_column("Service", style="cyan")
    table.add_column("Confidence")
    for signal in sorted(signals, key=lambda s: s.kind.value):
        table.add_row(
            signal.kind.value,
            signal.flavor,
            "confirmed" if signal.confidence else "[yellow]heuristic[/yellow]",
        )
    console.print(table)
