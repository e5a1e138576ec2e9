"""CLI command ``guardsync watch``: repeat passes on an interval."""

from __future__ import annotations

import signal
import sys

import click
import yaml
from rich.markup import escape

from guardsync.cli.common import console, load_config, record_pass, status_text
from guardsync.engine import build_runner
from guardsync.results import PassResult


@click.command()
@click.option(
    "--interval",
    "-i",
    type=float,
    default=None,
    help="Seconds between passes (default: GUARDSYNC_INTERVAL or 3600).",
)
@click.option("--parallel", is_flag=True, help="Apply daemon and firewall changes concurrently.")
@click.pass_context
def watch(ctx: click.Context, interval: float | None, parallel: bool) -> None:
    """Run a pass now and then every INTERVAL seconds until stopped."""
    try:
        config = load_config(ctx)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(2)
    if interval is not None:
        config.interval = interval
    if config.interval <= 0:
        raise click.BadParameter("interval must be positive", param_hint="--interval")

    try:
        runner = build_runner(config, parallel=parallel)
    except (ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(2)

    console.print(
        f"[bold]guardsync[/bold] reconciling every {config.interval:g}s. "
        "Press Ctrl+C to stop.\n"
    )

    def on_result(result: PassResult) -> None:
        plan = result.plan
        changes = 0 if plan is None else (
            len(plan.daemon_adds)
            + len(plan.daemon_removes)
            + len(plan.firewall_adds)
            + len(plan.firewall_removes)
        )
        console.print(
            f"  pass {result.id}: {status_text(result.status)}, {changes} change(s)"
        )
        for message in result.error_messages:
            console.print(f"    [red]error[/red] {escape(message)}")
        record_pass(config.db_path, result)

    def _signal_handler(signum: int, frame: object) -> None:
        console.print("\n[dim]Stopping...[/dim]")
        runner.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        runner.run_forever(config.interval, on_result=on_result)
    except KeyboardInterrupt:
        runner.stop()
