"""SQL implementations of the storage interfaces.

All repositories use SQLAlchemy 2.0-style queries (select() +
session.execute()). Each one takes a session factory and opens a short
session per call, since handlers call in from many worker threads.

Repositories sharing one engine should share one lock: an in-memory
database is a single connection, and two sessions interleaving on it
would commit or roll back each other's work.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from cloudcode.models.entity import Entity
from cloudcode.models.log import LogRecord
from cloudcode.models.outcome import TriggerKind
from cloudcode.storage.repositories import LogRepository, ObjectStore, SessionResolver
from cloudcode.storage.schema import LogRow, ObjectRow

logger = logging.getLogger(__name__)

SESSION_CLASS = "_Session"
USER_CLASS = "_User"


def new_object_id() -> str:
    return uuid.uuid4().hex[:10]


def _utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_entity(row: ObjectRow) -> Entity:
    return Entity(
        class_name=row.class_name,
        fields=copy.deepcopy(row.data_json),
        object_id=row.object_id,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    ).snapshot()


class SqlObjectStore(ObjectStore):
    """Reference object store backed by a single ``objects`` table.

    A store-wide lock serializes access, which gives per-object
    atomicity and keeps a shared in-memory SQLite connection safe.
    """

    def __init__(
        self, session_factory: sessionmaker[Session], *, lock: threading.RLock | None = None
    ) -> None:
        self._session_factory = session_factory
        self._lock = lock or threading.RLock()

    def get(self, class_name: str, object_id: str) -> Entity | None:
        with self._lock, self._session_factory() as session:
            row = session.get(ObjectRow, (class_name, object_id))
            return _row_to_entity(row) if row is not None else None

    def find(
        self,
        class_name: str,
        where: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> Sequence[Entity]:
        stmt = (
            select(ObjectRow)
            .where(ObjectRow.class_name == class_name)
            .order_by(ObjectRow.created_at, ObjectRow.object_id)
        )
        with self._lock, self._session_factory() as session:
            rows = session.execute(stmt).scalars().all()
            matches: list[Entity] = []
            for row in rows:
                if where and any(row.data_json.get(k) != v for k, v in where.items()):
                    continue
                matches.append(_row_to_entity(row))
                if limit is not None and len(matches) >= limit:
                    break
            return matches

    def save(self, entity: Entity) -> Entity:
        now = datetime.now(timezone.utc)
        data = copy.deepcopy(entity.fields)
        with self._lock, self._session_factory() as session, session.begin():
            row = None
            if entity.object_id is not None:
                row = session.get(ObjectRow, (entity.class_name, entity.object_id))
            if row is None:
                row = ObjectRow(
                    class_name=entity.class_name,
                    object_id=entity.object_id or new_object_id(),
                    data_json=data,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.data_json = data
                row.updated_at = now
            session.flush()
            return _row_to_entity(row)

    def delete(self, class_name: str, object_id: str) -> bool:
        with self._lock, self._session_factory() as session, session.begin():
            row = session.get(ObjectRow, (class_name, object_id))
            if row is None:
                return False
            session.delete(row)
            return True


class SqlLogRepository(LogRepository):
    """Operational log persisted to the ``operational_log`` table."""

    def __init__(
        self, session_factory: sessionmaker[Session], *, lock: threading.RLock | None = None
    ) -> None:
        self._session_factory = session_factory
        self._lock = lock or threading.RLock()

    def append(self, record: LogRecord) -> None:
        row = LogRow(
            timestamp=record.timestamp,
            kind=record.kind.value,
            target_name=record.target_name,
            outcome=record.outcome,
            error_detail=record.error_detail,
            invocation_id=record.invocation_id,
        )
        with self._lock, self._session_factory() as session, session.begin():
            session.add(row)

    def list(
        self,
        *,
        kind: str | None = None,
        target_name: str | None = None,
        limit: int | None = None,
    ) -> Sequence[LogRecord]:
        stmt = select(LogRow).order_by(LogRow.id.desc())
        if kind is not None:
            stmt = stmt.where(LogRow.kind == TriggerKind(kind).value)
        if target_name is not None:
            stmt = stmt.where(LogRow.target_name == target_name)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._lock, self._session_factory() as session:
            rows = session.execute(stmt).scalars().all()
            return [
                LogRecord(
                    timestamp=_utc(row.timestamp),
                    kind=TriggerKind(row.kind),
                    target_name=row.target_name,
                    outcome=row.outcome,
                    error_detail=row.error_detail,
                    invocation_id=row.invocation_id,
                )
                for row in rows
            ]


class StoreSessionResolver(SessionResolver):
    """Resolves tokens against ``_Session`` objects in an ObjectStore.

    A session object carries ``sessionToken``, ``user`` (an object id or
    a pointer dict with ``objectId``) and an optional ISO ``expiresAt``.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    def resolve(self, session_token: str) -> Entity | None:
        sessions = self._store.find(SESSION_CLASS, {"sessionToken": session_token}, limit=1)
        if not sessions:
            return None
        session = sessions[0]

        expires_at = session.get("expiresAt")
        if expires_at is not None:
            try:
                expiry = _utc(datetime.fromisoformat(expires_at))
            except (TypeError, ValueError):
                logger.warning("Session has an unreadable expiresAt %r; treating it as invalid", expires_at)
                return None
            if expiry <= datetime.now(timezone.utc):
                return None

        user_ref = session.get("user")
        if isinstance(user_ref, dict):
            user_ref = user_ref.get("objectId")
        if not isinstance(user_ref, str):
            return None
        return self._store.get(USER_CLASS, user_ref)
