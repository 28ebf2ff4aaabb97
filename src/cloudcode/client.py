"""Storage client handed to handler code as ``request.objects``.

Reads go straight to the object store. Writes go through the trigger
dispatcher, so a handler saving another object fires that object's own
triggers. Deleted-object snapshots are refused.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from cloudcode.exceptions import ObjectNotFoundError, StaleObjectError
from cloudcode.models.entity import Entity, validate_json

if TYPE_CHECKING:
    from cloudcode.dispatcher import TriggerDispatcher
    from cloudcode.storage.repositories import ObjectStore


class Query:
    """Equality query over one storage class.

    Example::

        reviews = request.objects.query("Review").equal_to("movie", "The Matrix").find()
    """

    def __init__(self, store: ObjectStore, class_name: str) -> None:
        self._store = store
        self.class_name = class_name
        self._where: dict[str, Any] = {}
        self._limit: int | None = None

    def equal_to(self, key: str, value: Any) -> Query:
        self._where[key] = validate_json(value, what=f"query value for {key!r}")
        return self

    def limit(self, n: int) -> Query:
        if n < 0:
            raise ValueError(f"limit must be >= 0, got {n}")
        self._limit = n
        return self

    def find(self) -> list[Entity]:
        return list(self._store.find(self.class_name, self._where or None, limit=self._limit))

    def first(self) -> Entity | None:
        found = self._store.find(self.class_name, self._where or None, limit=1)
        return found[0] if found else None

    def count(self) -> int:
        return self._store.count(self.class_name, self._where or None)

    def __repr__(self) -> str:
        return f"<Query {self.class_name} where={self._where!r} limit={self._limit}>"


class ObjectsClient:
    """Object access bound to one acting user (or none)."""

    def __init__(
        self,
        store: ObjectStore,
        dispatcher: TriggerDispatcher,
        user: Entity | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self.user = user

    def query(self, class_name: str) -> Query:
        return Query(self._store, class_name)

    def get(self, class_name: str, object_id: str) -> Entity:
        """Fetch an object by id.

        Raises:
            ObjectNotFoundError: If no such object exists.
        """
        found = self._store.get(class_name, object_id)
        if found is None:
            raise ObjectNotFoundError(class_name, object_id)
        return found

    def fetch(self, entity: Entity) -> Entity:
        """Return a fresh copy of ``entity`` from the store.

        Raises:
            StaleObjectError: If ``entity`` is a deleted snapshot.
            ObjectNotFoundError: If the object is unsaved or gone.
        """
        self._require_live(entity)
        if entity.object_id is None:
            raise ObjectNotFoundError(entity.class_name, None)
        return self.get(entity.class_name, entity.object_id)

    def save(self, entity: Entity) -> Entity:
        """Save through the dispatcher and return the committed snapshot.

        Raises:
            StaleObjectError: If ``entity`` is a deleted snapshot.
            ValidationRejection: If a beforeSave trigger rejects the save.
        """
        self._require_live(entity)
        event = self._dispatcher.save(entity, user=self.user)
        event.raise_if_rejected()
        return event.committed

    def delete(self, entity: Entity) -> None:
        """Delete through the dispatcher.

        Raises:
            StaleObjectError: If ``entity`` is a deleted snapshot.
            ValidationRejection: If a beforeDelete trigger rejects the delete.
        """
        self._require_live(entity)
        event = self._dispatcher.delete(entity, user=self.user)
        event.raise_if_rejected()

    @staticmethod
    def _require_live(entity: Entity) -> None:
        if entity.is_stale:
            raise StaleObjectError(entity.class_name, entity.object_id)
