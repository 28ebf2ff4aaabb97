"""Operational log record."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from cloudcode.models.outcome import TriggerKind


@dataclass(frozen=True)
class LogRecord:
    """A single operational log entry.

    Attributes:
        timestamp: When the outcome was observed (UTC).
        kind: Trigger kind, or ``function``.
        target_name: Class name for triggers, function name for functions.
        outcome: One of "success", "failure", "timeout", "rejected",
            "defect".
        error_detail: Error message or traceback summary, if any.
        invocation_id: Id of the invocation the record belongs to.
    """

    timestamp: datetime
    kind: TriggerKind
    target_name: str
    outcome: str  # "success", "failure", "timeout", "rejected", "defect"
    error_detail: str | None = None
    invocation_id: str | None = None
