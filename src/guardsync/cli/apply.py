"""CLI command ``guardsync apply``: run one reconciliation pass."""

from __future__ import annotations

import signal
import sys

import click
import yaml
from rich.markup import escape

from guardsync.cli.common import console, dump_yaml, load_config, print_result, record_pass
from guardsync.engine import build_runner


@click.command()
@click.option("--dry-run", is_flag=True, help="Print the plan without changing anything.")
@click.option("--url", default=None, help="Allow-list source URL (overrides config).")
@click.option(
    "--parallel",
    is_flag=True,
    help="Apply daemon and firewall changes concurrently.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "yaml"]),
    default="table",
    help="Output format for the pass result.",
)
@click.pass_context
def apply(
    ctx: click.Context,
    dry_run: bool,
    url: str | None,
    parallel: bool,
    output_format: str,
) -> None:
    """Probe, fetch, reconcile and apply one pass."""
    try:
        config = load_config(ctx)
        runner = build_runner(config, dry_run=dry_run, parallel=parallel, source_url=url)
    except (ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(2)

    if output_format == "table":
        mode = "planning" if dry_run else "applying"
        console.print(
            f"[bold]guardsync[/bold] {mode} against "
            f"[cyan]{config.firewall_backend}[/cyan] + [cyan]{config.fail2ban_dir}[/cyan]"
        )

    def _signal_handler(signum: int, frame: object) -> None:
        console.print("\n[dim]Cancelling after the current operation...[/dim]")
        runner.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    result = runner.run()

    if output_format == "yaml":
        dump_yaml(result)
    else:
        print_result(result)

    if not dry_run:
        record_pass(config.db_path, result)
    sys.exit(result.exit_code)
