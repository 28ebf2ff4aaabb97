"""cloudcode run -- invoke a cloud function."""

from __future__ import annotations

import json

import click

from cloudcode.cli.formatting import format_envelope, format_error


@click.command()
@click.argument("name")
@click.option("-p", "--params", "params_json", default="{}", help="Function params as a JSON object.")
@click.option("--session-token", default=None, envvar="CLOUDCODE_SESSION_TOKEN", help="Session token of the acting user.")
@click.pass_context
def run(ctx: click.Context, name: str, params_json: str, session_token: str | None) -> None:
    """Invoke cloud function NAME and print its envelope."""
    from cloudcode.cli import _cloud_session

    with _cloud_session(ctx) as (cloud, console):
        try:
            params = json.loads(params_json)
        except json.JSONDecodeError as e:
            format_error(f"--params is not valid JSON: {e}", console)
            raise SystemExit(2) from None

        envelope = cloud.call(
            {"name": name, "params": params, "sessionToken": session_token}
        )
        format_envelope(envelope, console)
        if "error" in envelope:
            raise SystemExit(1)
