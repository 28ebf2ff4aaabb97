"""Trigger dispatcher -- drives one storage mutation through its lifecycle.

    pending -> before -> decided -> committed -> after -> done
                                 `-> rejected

A save or delete with no before-trigger goes straight from pending to
committed. An after-trigger, if registered, is detached once the commit
has happened; the mutation reaches ``done`` when it completes, but the
request path returns as soon as the event is committed.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cloudcode.exceptions import (
    CloudCodeError,
    IllegalTransitionError,
    ObjectNotFoundError,
    error_for,
)
from cloudcode.models.outcome import Allow, Reject, TriggerKind, Verdict

if TYPE_CHECKING:
    from cloudcode.context import ContextBuilder
    from cloudcode.models.entity import Entity
    from cloudcode.oplog import OperationalLog
    from cloudcode.registry import HandlerRegistry
    from cloudcode.sandbox import Sandbox
    from cloudcode.storage.repositories import ObjectStore

logger = logging.getLogger(__name__)


class MutationState(str, enum.Enum):
    """Lifecycle state of a save or delete."""

    PENDING = "pending"
    BEFORE = "before"
    DECIDED = "decided"
    COMMITTED = "committed"
    REJECTED = "rejected"
    AFTER = "after"
    DONE = "done"

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[MutationState, frozenset[MutationState]] = {
    MutationState.PENDING: frozenset({MutationState.BEFORE, MutationState.COMMITTED}),
    MutationState.BEFORE: frozenset({MutationState.DECIDED}),
    MutationState.DECIDED: frozenset({MutationState.COMMITTED, MutationState.REJECTED}),
    MutationState.COMMITTED: frozenset({MutationState.AFTER, MutationState.DONE}),
    MutationState.AFTER: frozenset({MutationState.DONE}),
    MutationState.REJECTED: frozenset(),
    MutationState.DONE: frozenset(),
}

TERMINAL_STATES = frozenset({MutationState.REJECTED, MutationState.DONE})

_HOOKS = {
    "save": (TriggerKind.BEFORE_SAVE, TriggerKind.AFTER_SAVE),
    "delete": (TriggerKind.BEFORE_DELETE, TriggerKind.AFTER_DELETE),
}


@dataclass
class MutationEvent:
    """One save or delete moving through the dispatcher.

    Fields:
        operation: "save" or "delete".
        class_name: Storage class of the affected object.
        entity: Entity as submitted by the caller.
        state: Current lifecycle state.
        history: Every state entered, in order, starting with pending.
        verdict: Before-trigger verdict, if a before-trigger ran.
        committed: Stored snapshot after a save; the deleted object after
            a delete.
        after: Future of the detached after-trigger, if one was started.
    """

    operation: str
    class_name: str
    entity: Entity
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: MutationState = MutationState.PENDING
    history: list[MutationState] = field(default_factory=lambda: [MutationState.PENDING])
    verdict: Verdict | None = None
    committed: Entity | None = None
    after: Future | None = None

    # Internal
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _finished: threading.Event = field(default_factory=threading.Event, repr=False)

    def advance(self, state: MutationState) -> None:
        """Move to ``state``.

        Raises:
            IllegalTransitionError: If the lifecycle does not allow the move.
        """
        state = MutationState(state)
        with self._lock:
            if state not in _TRANSITIONS[self.state]:
                raise IllegalTransitionError(
                    f"{self.operation} {self.class_name}: cannot go from "
                    f"{self.state} to {state}"
                )
            self.state = state
            self.history.append(state)
            if state in TERMINAL_STATES:
                self._finished.set()
        logger.debug("%s %s %s -> %s", self.operation, self.class_name, self.event_id, state)

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the event is rejected or done.

        For operators and tests; the request path never waits on after-triggers.
        """
        return self._finished.wait(timeout)

    @property
    def rejected(self) -> bool:
        return self.state is MutationState.REJECTED

    @property
    def error(self) -> CloudCodeError | None:
        """The exception a caller sees for a rejected mutation, else None."""
        if not isinstance(self.verdict, Reject) or not self.rejected:
            return None
        return error_for(self.verdict.code, self.verdict.message)

    def raise_if_rejected(self) -> None:
        err = self.error
        if err is not None:
            raise err


class TriggerDispatcher:
    """Runs before/after triggers around object store writes."""

    def __init__(
        self,
        registry: HandlerRegistry,
        sandbox: Sandbox,
        builder: ContextBuilder,
        store: ObjectStore,
        oplog: OperationalLog | None = None,
    ) -> None:
        self.registry = registry
        self.sandbox = sandbox
        self.builder = builder
        self.store = store
        self._oplog = oplog

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def save(self, entity: Entity, user: Entity | None = None) -> MutationEvent:
        """Save ``entity`` through beforeSave / store / afterSave.

        Returns the event once it is committed or rejected. Store errors
        propagate.
        """
        event = MutationEvent("save", entity.class_name, entity)
        original = None
        if entity.object_id is not None:
            original = self.store.get(entity.class_name, entity.object_id)

        target = entity
        if self._run_before(event, entity, user, original):
            if event.rejected:
                return event
            if isinstance(event.verdict, Allow) and event.verdict.object is not None:
                target = event.verdict.object

        event.committed = self.store.save(target)
        event.advance(MutationState.COMMITTED)
        self._start_after(event, event.committed, user, original)
        return event

    def delete(self, entity: Entity, user: Entity | None = None) -> MutationEvent:
        """Delete ``entity`` through beforeDelete / store / afterDelete.

        Raises:
            ObjectNotFoundError: If the object is unsaved or already gone.
        """
        if entity.object_id is None:
            raise ObjectNotFoundError(entity.class_name, None)
        stored = self.store.get(entity.class_name, entity.object_id)
        if stored is None:
            raise ObjectNotFoundError(entity.class_name, entity.object_id)

        event = MutationEvent("delete", entity.class_name, entity)
        if self._run_before(event, stored, user, None) and event.rejected:
            return event

        if not self.store.delete(stored.class_name, stored.object_id):
            # Lost a race with another delete; nothing was removed.
            raise ObjectNotFoundError(stored.class_name, stored.object_id)
        event.committed = stored
        event.advance(MutationState.COMMITTED)
        self._start_after(event, stored, user, None)
        return event

    # ------------------------------------------------------------------
    # Hooks for an external storage collaborator
    # ------------------------------------------------------------------

    def before(
        self,
        kind: TriggerKind | str,
        entity: Entity,
        user: Entity | None = None,
        original: Entity | None = None,
    ) -> Verdict:
        """Run the before-trigger for ``entity`` and return its verdict.

        With no handler registered the verdict is ``Allow(entity)``.
        """
        kind = TriggerKind(kind)
        if not kind.is_before:
            raise ValueError(f"{kind} is not a before-trigger")
        registration = self.registry.lookup(kind, entity.class_name)
        if registration is None:
            return Allow(entity)
        request = self.builder.for_trigger(kind, entity, user, original)
        verdict = self.sandbox.run(registration, request)
        if isinstance(verdict, Reject):
            logger.info("%s rejected %s: %s", kind, entity.class_name, verdict.message)
        return verdict

    def after(
        self,
        kind: TriggerKind | str,
        entity: Entity,
        user: Entity | None = None,
        original: Entity | None = None,
    ) -> Future | None:
        """Detach the after-trigger for ``entity``.

        Returns the future of the detached invocation, or None when no
        handler is registered. Callers must not join it on a request path.
        """
        kind = TriggerKind(kind)
        if not kind.is_after:
            raise ValueError(f"{kind} is not an after-trigger")
        registration = self.registry.lookup(kind, entity.class_name)
        if registration is None:
            return None
        request = self.builder.for_trigger(kind, entity, user, original)
        try:
            return self.sandbox.detach(registration, request)
        except RuntimeError:
            logger.warning(
                "Sandbox is shut down; %s for %s not run", kind, entity.class_name
            )
            return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_before(
        self,
        event: MutationEvent,
        entity: Entity,
        user: Entity | None,
        original: Entity | None,
    ) -> bool:
        """Run the before-trigger, if any. Returns whether one ran."""
        before_kind, _ = _HOOKS[event.operation]
        if self.registry.lookup(before_kind, event.class_name) is None:
            return False

        event.advance(MutationState.BEFORE)
        event.verdict = self.before(before_kind, entity, user, original)
        event.advance(MutationState.DECIDED)
        if isinstance(event.verdict, Reject):
            event.advance(MutationState.REJECTED)
            if self._oplog is not None:
                self._oplog.record(before_kind, event.class_name, "rejected", event.verdict.message)
        return True

    def _start_after(
        self,
        event: MutationEvent,
        entity: Entity,
        user: Entity | None,
        original: Entity | None,
    ) -> None:
        _, after_kind = _HOOKS[event.operation]
        future = self.after(after_kind, entity, user, original)
        if future is None:
            event.advance(MutationState.DONE)
            return
        event.after = future
        event.advance(MutationState.AFTER)
        future.add_done_callback(lambda _f: event.advance(MutationState.DONE))
