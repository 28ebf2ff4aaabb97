"""Handler registry.

Maps (TriggerKind, target name) to the registered handler. Populated at
deployment time; a later registration for the same key replaces the
earlier one wholesale. Owned by a Cloud instance.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from cloudcode.exceptions import RegistrationError
from cloudcode.models.outcome import TriggerKind

if TYPE_CHECKING:
    from cloudcode.context import Request, Response

Handler = Callable[["Request", "Response"], Any]


@dataclass(frozen=True)
class HandlerRegistration:
    """One registered handler.

    Immutable: re-registering the same (kind, target_name) creates a new
    registration instead of changing this one.
    """

    kind: TriggerKind
    target_name: str
    handler: Handler
    timeout: float | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[TriggerKind, str]:
        return (self.kind, self.target_name)

    @property
    def handler_name(self) -> str:
        """Display name of the handler callable."""
        return getattr(self.handler, "__qualname__", None) or repr(self.handler)


class HandlerRegistry:
    """Registry of cloud functions and lifecycle triggers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handlers: dict[tuple[TriggerKind, str], HandlerRegistration] = {}

    def register(
        self,
        kind: TriggerKind | str,
        target_name: str,
        handler: Handler,
        *,
        timeout: float | None = None,
    ) -> HandlerRegistration:
        """Register ``handler`` for (kind, target_name), replacing any previous one.

        Raises:
            RegistrationError: If the kind is unknown, the name is empty,
                the handler is not callable, or the timeout is not positive.
        """
        try:
            kind = TriggerKind(kind)
        except ValueError:
            raise RegistrationError(f"Unknown trigger kind: {kind!r}") from None
        if not isinstance(target_name, str) or not target_name.strip():
            raise RegistrationError(f"{kind} handlers need a non-empty name")
        if not callable(handler):
            raise RegistrationError(
                f"{kind} handler for {target_name!r} is not callable: {handler!r}"
            )
        if timeout is not None and timeout <= 0:
            raise RegistrationError(f"Timeout must be positive, got {timeout}")

        registration = HandlerRegistration(
            kind=kind, target_name=target_name, handler=handler, timeout=timeout
        )
        with self._lock:
            self._handlers[registration.key] = registration
        return registration

    def unregister(self, kind: TriggerKind | str, target_name: str) -> None:
        with self._lock:
            self._handlers.pop((TriggerKind(kind), target_name), None)

    def lookup(self, kind: TriggerKind | str, target_name: str) -> HandlerRegistration | None:
        """Get the current registration, or None if nothing is registered."""
        with self._lock:
            return self._handlers.get((TriggerKind(kind), target_name))

    def registrations(self, kind: TriggerKind | str | None = None) -> list[HandlerRegistration]:
        """All registrations, sorted by kind then name."""
        with self._lock:
            regs = list(self._handlers.values())
        if kind is not None:
            kind = TriggerKind(kind)
            regs = [r for r in regs if r.kind is kind]
        order = list(TriggerKind)
        return sorted(regs, key=lambda r: (order.index(r.kind), r.target_name))

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
