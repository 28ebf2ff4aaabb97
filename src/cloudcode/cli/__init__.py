"""cloudcode CLI -- run functions and inspect an engine from the terminal.

This module is NEVER imported from cloudcode/__init__.py.
It is only loaded via the ``cloudcode`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING

try:
    import click
    from dotenv import load_dotenv
except ImportError:
    raise ImportError(
        "CLI dependencies not installed. Install with: pip install cloudcode[cli]"
    ) from None

from cloudcode.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from cloudcode.cloud import Cloud


@click.group()
@click.option(
    "--db",
    default=".cloudcode.db",
    envvar="CLOUDCODE_DB",
    help="Path to the cloudcode database.",
)
@click.option(
    "--deploy",
    "deployments",
    multiple=True,
    envvar="CLOUDCODE_DEPLOY",
    help="Deployment file or module to load (repeatable).",
)
@click.pass_context
def cli(ctx: click.Context, db: str, deployments: tuple[str, ...]) -> None:
    """cloudcode: server-side functions and lifecycle triggers."""
    load_dotenv()
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["deployments"] = deployments


def _get_cloud(ctx: click.Context) -> Cloud:
    """Open a Cloud from Click context and load its deployments."""
    from cloudcode.cloud import Cloud
    from cloudcode.models.config import EngineConfig

    config = EngineConfig.from_env(db_path=ctx.obj["db_path"])
    cloud = Cloud.open(config=config)
    try:
        for target in ctx.obj["deployments"]:
            cloud.load(target)
    except BaseException:
        cloud.close()
        raise
    return cloud


@contextmanager
def _cloud_session(ctx: click.Context) -> Iterator[tuple[Cloud, Console]]:
    """Open a Cloud, yield (cloud, console), and close it on exit.

    Exceptions are formatted as CLI errors with exit status 1.
    """
    console = get_console()
    try:
        cloud = _get_cloud(ctx)
        try:
            yield cloud, console
        finally:
            cloud.close()
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from cloudcode.cli.commands.run import run  # noqa: E402
from cloudcode.cli.commands.handlers import handlers  # noqa: E402
from cloudcode.cli.commands.log import log  # noqa: E402

cli.add_command(run)
cli.add_command(handlers)
cli.add_command(log)
