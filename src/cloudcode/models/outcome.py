"""Outcome types for handler invocations.

Cloud functions resolve to an ``InvocationOutcome`` (``Success`` or
``Failure``). Before-triggers resolve to a ``Verdict`` (``Allow`` or
``Reject``). After-triggers also resolve to an ``InvocationOutcome``, but it
is only ever observed by the operational log.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from pydantic import JsonValue

from cloudcode.exceptions import ErrorCode

if TYPE_CHECKING:
    from cloudcode.models.entity import Entity


class TriggerKind(str, enum.Enum):
    """What a handler is bound to.

    Uses ``str, Enum`` dual inheritance so values compare and serialize
    as their wire names.
    """

    FUNCTION = "function"
    BEFORE_SAVE = "beforeSave"
    AFTER_SAVE = "afterSave"
    BEFORE_DELETE = "beforeDelete"
    AFTER_DELETE = "afterDelete"

    def __str__(self) -> str:
        return self.value

    @property
    def is_trigger(self) -> bool:
        return self is not TriggerKind.FUNCTION

    @property
    def is_before(self) -> bool:
        return self in (TriggerKind.BEFORE_SAVE, TriggerKind.BEFORE_DELETE)

    @property
    def is_after(self) -> bool:
        return self in (TriggerKind.AFTER_SAVE, TriggerKind.AFTER_DELETE)


@dataclass(frozen=True)
class Success:
    """A function (or after-trigger) completed with ``value``."""

    value: JsonValue = None


@dataclass(frozen=True)
class Failure:
    """A function (or after-trigger) failed."""

    code: ErrorCode
    message: str


@dataclass(frozen=True)
class Allow:
    """Before-trigger verdict: let the storage operation proceed.

    ``object`` is the entity to persist, including any mutations the
    handler made to ``request.object``.
    """

    object: Entity | None = None


@dataclass(frozen=True)
class Reject:
    """Before-trigger verdict: abort the storage operation.

    ``code`` distinguishes an explicit rejection (``VALIDATION_FAILED``)
    from rejections the sandbox imposes (timeouts, faults, no response).
    """

    message: str
    code: ErrorCode = ErrorCode.VALIDATION_FAILED


InvocationOutcome = Union[Success, Failure]
Verdict = Union[Allow, Reject]
