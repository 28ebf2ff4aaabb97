"""Rich formatting helpers for the cloudcode CLI.

Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from cloudcode.models.log import LogRecord
    from cloudcode.registry import HandlerRegistration

_OUTCOME_STYLES = {
    "success": "green",
    "failure": "red",
    "timeout": "yellow",
    "rejected": "magenta",
    "defect": "red",
}


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def format_envelope(envelope: dict[str, Any], console: Console) -> None:
    """Print a wire envelope as JSON."""
    console.print_json(json.dumps(envelope))


def format_handlers(registrations: list[HandlerRegistration], console: Console) -> None:
    """Display registered handlers as a table."""
    if not registrations:
        console.print("[dim]No handlers registered.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Kind", style="cyan")
    table.add_column("Target")
    table.add_column("Handler", style="dim")
    table.add_column("Timeout", justify="right")

    for reg in registrations:
        table.add_row(
            str(reg.kind),
            escape(reg.target_name),
            escape(reg.handler_name),
            f"{reg.timeout:g}s" if reg.timeout is not None else "default",
        )

    console.print(table)


def format_log(entries: list[LogRecord], console: Console) -> None:
    """Display operational log records, newest first."""
    if not entries:
        console.print("[dim]No log records.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Time", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Target")
    table.add_column("Outcome")
    table.add_column("Detail")

    for entry in entries:
        style = _OUTCOME_STYLES.get(entry.outcome, "")
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.kind),
            escape(entry.target_name),
            f"[{style}]{entry.outcome}[/{style}]" if style else entry.outcome,
            escape(entry.error_detail or ""),
        )

    console.print(table)


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)
