"""CLI entry point: Click group with global options."""

from __future__ import annotations

import logging

import click

from guardsync import __version__


@click.group()
@click.version_option(version=__version__, prog_name="guardsync")
@click.option(
    "--rules",
    "-r",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to a YAML rule catalog (default: built-in preset).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, rules: str | None, verbose: bool) -> None:
    """guardsync: keep fail2ban jails and firewall allow rules in step with the host."""
    ctx.ensure_object(dict)
    ctx.obj["rules_path"] = rules
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from guardsync.cli.apply import apply  # noqa: F811
    from guardsync.cli.history import history  # noqa: F811
    from guardsync.cli.probe import probe  # noqa: F811
    from guardsync.cli.watch import watch  # noqa: F811

    main.add_command(apply)
    main.add_command(probe)
    main.add_command(watch)
    main.add_command(history)


_register_commands()
