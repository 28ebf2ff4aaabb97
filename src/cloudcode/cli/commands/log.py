"""cloudcode log -- show the operational log."""

from __future__ import annotations

import click

from cloudcode.cli.formatting import format_log
from cloudcode.models.outcome import TriggerKind


@click.command()
@click.option("-n", "--limit", default=20, type=int, help="Maximum number of records to show.")
@click.option(
    "--kind",
    default=None,
    type=click.Choice([k.value for k in TriggerKind]),
    help="Filter by trigger kind.",
)
@click.option("--target", default=None, help="Filter by function or class name.")
@click.pass_context
def log(ctx: click.Context, limit: int, kind: str | None, target: str | None) -> None:
    """Show after-trigger outcomes and handler faults, newest first."""
    from cloudcode.cli import _cloud_session

    with _cloud_session(ctx) as (cloud, console):
        format_log(cloud.log.history(kind=kind, target_name=target, limit=limit), console)
