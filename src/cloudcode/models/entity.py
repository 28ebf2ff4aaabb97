"""Entity snapshots passed between the store, the dispatcher and handlers.

An Entity is a plain bag of JSON fields plus storage metadata. Every
invocation works on its own snapshot; mutations made by a before-trigger
only reach the store when the trigger allows the operation.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from pydantic import JsonValue, TypeAdapter, ValidationError

from cloudcode.exceptions import InvalidPayloadError, StaleObjectError

_JSON = TypeAdapter(JsonValue)

# Wire keys owned by storage; handlers cannot set them as fields.
RESERVED_KEYS = frozenset({"className", "objectId", "createdAt", "updatedAt"})


def validate_json(value: Any, *, what: str = "value") -> JsonValue:
    """Validate that ``value`` is a closed JSON value.

    Raises:
        InvalidPayloadError: If the value contains anything other than
            null, bool, number, string, list or str-keyed dict.
    """
    try:
        return _JSON.validate_python(value)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise InvalidPayloadError(
            f"{what} is not a JSON value: {first['msg']}"
        ) from None


class _StaleFields(dict):
    """Field dict of a deleted-object snapshot. Every write raises StaleObjectError."""

    def __init__(self, data: Mapping[str, JsonValue], class_name: str, object_id: str | None) -> None:
        super().__init__(data)
        self._owner = (class_name, object_id)

    def _refuse(self, *args: Any, **kwargs: Any) -> Any:
        raise StaleObjectError(*self._owner)

    __setitem__ = __delitem__ = __ior__ = _refuse
    clear = pop = popitem = setdefault = update = _refuse

    def __copy__(self) -> dict[str, JsonValue]:
        return dict(self)

    def __deepcopy__(self, memo: dict) -> dict[str, JsonValue]:
        return copy.deepcopy(dict(self), memo)


def _format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(repr=False)
class Entity:
    """A snapshot of one stored object.

    Fields:
        class_name: Storage class (e.g. "Review").
        fields: User data, JSON values only.
        object_id: Store-assigned id; None until first save.
        created_at: Set by the store on first save.
        updated_at: Set by the store on every save.
    """

    class_name: str
    fields: dict[str, JsonValue] = field(default_factory=dict)
    object_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Internal
    _stale: bool = field(default=False, compare=False)
    _baseline: dict[str, JsonValue] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        for key in self.fields:
            self._check_key(key)
        self.fields = validate_json(dict(self.fields), what="fields")

    # -- Field access ---------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def set(self, key: str, value: Any) -> None:
        """Set a field. Raises StaleObjectError on a deleted snapshot."""
        self._require_live()
        self._check_key(key)
        self.fields[key] = validate_json(value, what=f"field {key!r}")

    def unset(self, key: str) -> None:
        self._require_live()
        self.fields.pop(key, None)

    def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    # -- State ----------------------------------------------------------

    @property
    def is_new(self) -> bool:
        """True until the object has been saved once."""
        return self.object_id is None

    @property
    def is_stale(self) -> bool:
        return self._stale

    def dirty_keys(self) -> set[str]:
        """Field names changed since this snapshot was taken."""
        keys = set(self.fields) | set(self._baseline)
        return {
            k for k in keys
            if k not in self._baseline
            or k not in self.fields
            or self.fields[k] != self._baseline[k]
        }

    def is_dirty(self, key: str | None = None) -> bool:
        dirty = self.dirty_keys()
        return bool(dirty) if key is None else key in dirty

    def _require_live(self) -> None:
        if self._stale:
            raise StaleObjectError(self.class_name, self.object_id)

    @staticmethod
    def _check_key(key: Any) -> None:
        if not isinstance(key, str) or not key:
            raise InvalidPayloadError(f"Field names must be non-empty strings, got {key!r}")
        if key in RESERVED_KEYS:
            raise InvalidPayloadError(f"{key!r} is managed by storage and cannot be set")

    # -- Copies ---------------------------------------------------------

    def snapshot(self) -> Entity:
        """Independent live copy whose dirty tracking starts now."""
        fields = copy.deepcopy(self.fields)
        return Entity(
            class_name=self.class_name,
            fields=fields,
            object_id=self.object_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            _baseline=copy.deepcopy(fields),
        )

    def frozen(self) -> Entity:
        """Independent read-only copy, used for deleted objects."""
        snap = self.snapshot()
        snap.fields = _StaleFields(snap.fields, snap.class_name, snap.object_id)
        snap._stale = True
        return snap

    # -- Wire format ----------------------------------------------------

    def to_json(self) -> dict[str, JsonValue]:
        data: dict[str, JsonValue] = {"className": self.class_name}
        if self.object_id is not None:
            data["objectId"] = self.object_id
        if self.created_at is not None:
            data["createdAt"] = _format_ts(self.created_at)
        if self.updated_at is not None:
            data["updatedAt"] = _format_ts(self.updated_at)
        data.update(copy.deepcopy(self.fields))
        return data

    @classmethod
    def from_json(cls, data: Mapping[str, Any], class_name: str | None = None) -> Entity:
        """Build an Entity from its wire shape.

        ``class_name`` overrides any ``className`` key in ``data``.
        """
        payload = dict(data)
        name = class_name or payload.pop("className", None)
        payload.pop("className", None)
        if not name:
            raise InvalidPayloadError("Missing className")
        object_id = payload.pop("objectId", None)
        created_at = _parse_ts(payload.pop("createdAt", None))
        updated_at = _parse_ts(payload.pop("updatedAt", None))
        return cls(
            class_name=name,
            fields=payload,
            object_id=object_id,
            created_at=created_at,
            updated_at=updated_at,
        )

    def __repr__(self) -> str:
        state = " stale" if self._stale else ""
        return f"<Entity {self.class_name}/{self.object_id}{state} {self.fields!r}>"
