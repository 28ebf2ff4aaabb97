"""Abstract interfaces for the storage collaborators.

The engine never talks to a database directly; it goes through these
contracts. No SQLAlchemy imports here.

Concrete implementations are in sqlite.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Mapping, Sequence

if TYPE_CHECKING:
    from cloudcode.models.entity import Entity
    from cloudcode.models.log import LogRecord


class ObjectStore(ABC):
    """Object storage and query service.

    Implementations own per-object atomicity; the engine adds no locking
    of its own around store calls.
    """

    @abstractmethod
    def get(self, class_name: str, object_id: str) -> Entity | None:
        """Get an object by id. Returns None if not found."""
        ...

    @abstractmethod
    def find(
        self,
        class_name: str,
        where: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> Sequence[Entity]:
        """Get objects of a class whose fields equal every ``where`` entry.

        Returns objects ordered by created_at ascending.
        """
        ...

    @abstractmethod
    def save(self, entity: Entity) -> Entity:
        """Insert or update an object.

        New objects get an id and created_at; every save bumps updated_at.
        Returns the committed snapshot.
        """
        ...

    @abstractmethod
    def delete(self, class_name: str, object_id: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        ...

    def count(self, class_name: str, where: Mapping[str, Any] | None = None) -> int:
        return len(self.find(class_name, where))


class SessionResolver(ABC):
    """Resolves session credentials to the acting user."""

    @abstractmethod
    def resolve(self, session_token: str) -> Entity | None:
        """Return the user for a session token, or None if the token is unknown."""
        ...


class LogRepository(ABC):
    """Persistence for operational log records."""

    @abstractmethod
    def append(self, record: LogRecord) -> None:
        """Append one record. Never updates or deletes."""
        ...

    @abstractmethod
    def list(
        self,
        *,
        kind: str | None = None,
        target_name: str | None = None,
        limit: int | None = None,
    ) -> Sequence[LogRecord]:
        """Records, newest first."""
        ...
