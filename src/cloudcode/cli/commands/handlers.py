"""cloudcode handlers -- list registered handlers."""

from __future__ import annotations

import click

from cloudcode.cli.formatting import format_handlers
from cloudcode.models.outcome import TriggerKind


@click.command()
@click.option(
    "--kind",
    default=None,
    type=click.Choice([k.value for k in TriggerKind]),
    help="Only show handlers of this kind.",
)
@click.pass_context
def handlers(ctx: click.Context, kind: str | None) -> None:
    """List functions and triggers registered by the deployments."""
    from cloudcode.cli import _cloud_session

    with _cloud_session(ctx) as (cloud, console):
        format_handlers(cloud.registry.registrations(kind), console)
