"""Operational log -- append-only record of after-hook outcomes and handler faults.

Records are kept in a bounded in-memory ring for inspection, mirrored to
the ``cloudcode.oplog`` logger, and persisted through a LogRepository
when one is configured.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from cloudcode.models.log import LogRecord
from cloudcode.models.outcome import TriggerKind

if TYPE_CHECKING:
    from cloudcode.storage.repositories import LogRepository

logger = logging.getLogger(__name__)

_QUIET_OUTCOMES = frozenset({"success"})


class OperationalLog:
    """Append-only operational log.

    Thread-safe: after-hooks report from supervisor threads while the
    request path keeps running.
    """

    def __init__(self, repository: LogRepository | None = None, *, capacity: int = 1000) -> None:
        self._repository = repository
        self._records: deque[LogRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(
        self,
        kind: TriggerKind,
        target_name: str,
        outcome: str,
        error_detail: str | None = None,
        *,
        invocation_id: str | None = None,
    ) -> LogRecord:
        """Append a record and return it."""
        entry = LogRecord(
            timestamp=datetime.now(timezone.utc),
            kind=TriggerKind(kind),
            target_name=target_name,
            outcome=outcome,
            error_detail=error_detail,
            invocation_id=invocation_id,
        )
        with self._lock:
            self._records.append(entry)

        level = logging.INFO if outcome in _QUIET_OUTCOMES else logging.WARNING
        logger.log(
            level,
            "%s %s: %s%s",
            entry.kind,
            target_name,
            outcome,
            f" ({error_detail})" if error_detail else "",
        )

        if self._repository is not None:
            try:
                self._repository.append(entry)
            except Exception:
                logger.exception("Failed to persist operational log record for %s", target_name)
        return entry

    def records(
        self,
        *,
        kind: TriggerKind | str | None = None,
        target_name: str | None = None,
        outcome: str | None = None,
    ) -> list[LogRecord]:
        """In-memory records, oldest first, optionally filtered."""
        with self._lock:
            entries = list(self._records)
        if kind is not None:
            kind = TriggerKind(kind)
            entries = [e for e in entries if e.kind is kind]
        if target_name is not None:
            entries = [e for e in entries if e.target_name == target_name]
        if outcome is not None:
            entries = [e for e in entries if e.outcome == outcome]
        return entries

    def history(
        self,
        *,
        kind: TriggerKind | str | None = None,
        target_name: str | None = None,
        limit: int | None = None,
    ) -> list[LogRecord]:
        """Records newest first, from persistence when configured.

        Unlike ``records()`` this includes entries written by earlier
        processes sharing the same database.
        """
        if self._repository is not None:
            return list(self._repository.list(kind=kind, target_name=target_name, limit=limit))
        entries = self.records(kind=kind, target_name=target_name)
        entries.reverse()
        return entries[:limit] if limit is not None else entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
