"""Per-invocation context: the Request a handler reads and the Response it resolves.

Every handler invocation gets a fresh Request (params, target object,
acting user, storage client) and a Response channel. Functions and
before-triggers resolve the Response with exactly one terminal call;
after-triggers resolve implicitly once the handler body and every
sub-operation it tracked have finished.

Resolution is first-wins. A second terminal call raises
DoubleResponseError inside the handler and is recorded as a defect;
a handler that goes idle without a terminal call resolves with
NoResponseError; the sandbox resolves a timed-out invocation.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import JsonValue

from cloudcode.exceptions import (
    CloudCodeError,
    DoubleResponseError,
    ErrorCode,
    InternalError,
    InvalidPayloadError,
    InvalidSessionError,
    NoResponseError,
    code_of,
)
from cloudcode.models.entity import Entity, validate_json
from cloudcode.models.outcome import Allow, Failure, Reject, Success, TriggerKind

if TYPE_CHECKING:
    from cloudcode.client import ObjectsClient
    from cloudcode.storage.repositories import SessionResolver

logger = logging.getLogger(__name__)


def describe_error(exc: BaseException) -> str:
    """Message for an exception, falling back to its class name."""
    return str(exc) or type(exc).__name__


@dataclass(repr=False)
class Request:
    """Everything a handler can read about its invocation.

    Fields:
        kind: What the handler is bound to.
        target_name: Function name, or class name for triggers.
        params: Caller-supplied parameters (functions only), copied verbatim.
        object: Private snapshot of the affected entity (triggers only).
            Stale (read-only) for afterDelete.
        original: Stored version of the object before this save, if any.
        user: Acting user resolved from the session token, or None.
        objects: Storage client bound to the acting user.
        invocation_id: Unique id for this invocation (auto-generated).
    """

    kind: TriggerKind
    target_name: str
    params: dict[str, JsonValue] = field(default_factory=dict)
    object: Entity | None = None
    original: Entity | None = None
    user: Entity | None = None
    objects: ObjectsClient | None = None
    invocation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<Request: {self.kind} {self.target_name}, id={self.invocation_id[:8]}>"


class Response:
    """Base class for invocation response channels.

    Subclasses supply the public terminal methods and map faults,
    timeouts and idleness onto their own outcome type.
    """

    _terminal_names: tuple[str, ...] = ()

    def __init__(self, request: Request) -> None:
        self.request = request
        self.defects: list[CloudCodeError] = []
        self.fault: BaseException | None = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._outcome: Any = None
        self._resolved_by: str | None = None
        self._outstanding: set[Future] = set()
        self._body_finished = False
        self._executor: Executor | None = None
        self._on_defect: Callable[[Response, CloudCodeError], None] | None = None

    # -- State ----------------------------------------------------------

    @property
    def resolved(self) -> bool:
        return self._done.is_set()

    @property
    def resolved_by(self) -> str | None:
        """"handler", "fault", "idle", "completed" or "timeout"; None while open."""
        return self._resolved_by

    @property
    def outcome(self) -> Any:
        return self._outcome

    def wait(self, timeout: float | None = None) -> bool:
        """Block until resolved or ``timeout`` elapses. Returns resolved."""
        return self._done.wait(timeout)

    # -- Sub-operations -------------------------------------------------

    def spawn(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        """Run ``fn`` as a tracked sub-operation of this invocation.

        The invocation is not considered idle until the returned future
        resolves. An exception in ``fn`` before the response is resolved
        fails the invocation.
        """
        if self._executor is None:
            raise RuntimeError("spawn() is only available while running in a sandbox")
        return self.track(self._executor.submit(fn, *args, **kwargs))

    def track(self, future: Future) -> Future:
        """Track a future started elsewhere as a sub-operation."""
        with self._lock:
            self._outstanding.add(future)
        future.add_done_callback(self._on_sub_operation_done)
        return future

    def _on_sub_operation_done(self, future: Future) -> None:
        with self._lock:
            self._outstanding.discard(future)
        if not future.cancelled():
            exc = future.exception()
            if exc is not None and self._resolved_by is None:
                self._fail(exc)
        self._check_idle()

    # -- Resolution (called by terminal methods and the sandbox) ---------

    def _bind(
        self,
        executor: Executor,
        on_defect: Callable[[Response, CloudCodeError], None] | None = None,
    ) -> None:
        self._executor = executor
        self._on_defect = on_defect

    def _record_defect(self, err: CloudCodeError) -> None:
        self.defects.append(err)
        if self._on_defect is not None:
            self._on_defect(self, err)

    def _resolve(
        self,
        outcome: Any,
        source: str,
        *,
        fault: BaseException | None = None,
        defect: CloudCodeError | None = None,
    ) -> bool:
        """Claim the response for ``outcome``. Returns False if already claimed.

        ``fault`` and ``defect`` are recorded before waiters are woken.
        """
        with self._lock:
            if self._resolved_by is not None:
                return False
            self._outcome = outcome
            self._resolved_by = source
            self.fault = fault
        if defect is not None:
            self._record_defect(defect)
        self._done.set()
        return True

    def _terminal(self, outcome: Any, action: str) -> None:
        if self._resolve(outcome, "handler"):
            return
        if self._resolved_by == "timeout":
            logger.warning(
                "%s %s: %s() arrived after the timeout and was dropped",
                self.request.kind, self.request.target_name, action,
            )
            return
        err = DoubleResponseError(
            f"{self.request.kind} handler for {self.request.target_name!r} called "
            f"{action}() after its response was already resolved"
        )
        self._record_defect(err)
        raise err

    def _fail(self, exc: BaseException) -> None:
        """Record an uncaught exception from the handler or a sub-operation."""
        if any(exc is d for d in self.defects):
            # DoubleResponseError propagated back out of the handler body.
            return
        if self._resolve(self._fault_outcome(exc), "fault", fault=exc):
            return
        if self._resolved_by != "timeout":
            self._record_defect(
                InternalError(
                    f"handler raised after responding: {type(exc).__name__}: "
                    f"{describe_error(exc)}"
                )
            )

    def _finish_body(self) -> None:
        with self._lock:
            self._body_finished = True
        self._check_idle()

    def _check_idle(self) -> None:
        with self._lock:
            idle = self._body_finished and not self._outstanding and self._resolved_by is None
        if idle:
            self._on_idle()

    def _on_idle(self) -> None:
        expected = " or ".join(f"{name}()" for name in self._terminal_names)
        err = NoResponseError(
            f"{self.request.kind} handler for {self.request.target_name!r} "
            f"finished without calling {expected}"
        )
        self._resolve(self._idle_outcome(err), "idle", defect=err)

    def _expire(self, seconds: float) -> None:
        self._resolve(self._timeout_outcome(seconds), "timeout")

    # -- Subclass hooks -------------------------------------------------

    def _fault_outcome(self, exc: BaseException) -> Any:
        raise NotImplementedError

    def _timeout_outcome(self, seconds: float) -> Any:
        raise NotImplementedError

    def _idle_outcome(self, err: NoResponseError) -> Any:
        raise NotImplementedError

    def __repr__(self) -> str:
        state = self._resolved_by or "open"
        return f"<{type(self).__name__}: {self.request.target_name}, {state}>"


class FunctionResponse(Response):
    """Response channel for a cloud function: success() or error()."""

    _terminal_names = ("success", "error")

    def success(self, value: Any = None) -> None:
        """Resolve with ``value``, which must be a JSON value.

        Raises:
            InvalidPayloadError: If ``value`` is not JSON-representable.
            DoubleResponseError: If the response was already resolved.
        """
        value = validate_json(copy.deepcopy(value), what="function result")
        self._terminal(Success(value), "success")

    def error(self, message: str = "", code: ErrorCode | int = ErrorCode.SCRIPT_FAILED) -> None:
        """Resolve with a failure the caller will see."""
        self._terminal(Failure(ErrorCode(code), str(message)), "error")

    def _fault_outcome(self, exc: BaseException) -> Failure:
        return Failure(code_of(exc), describe_error(exc))

    def _timeout_outcome(self, seconds: float) -> Failure:
        return Failure(
            ErrorCode.TIMEOUT,
            f"Function {self.request.target_name!r} timed out after {seconds:g}s",
        )

    def _idle_outcome(self, err: NoResponseError) -> Failure:
        return Failure(err.code, str(err))


class BeforeResponse(Response):
    """Response channel for beforeSave / beforeDelete: allow() or reject()."""

    _terminal_names = ("allow", "reject")

    def allow(self, obj: Entity | None = None) -> None:
        """Let the operation proceed.

        Args:
            obj: Entity to persist. Defaults to ``request.object`` with
                whatever mutations the handler made to it. Must have the
                same class and object id as ``request.object``.

        Raises:
            InvalidPayloadError: If ``obj`` is a different object.
        """
        target = obj if obj is not None else self.request.object
        if target is not None and target.class_name != self.request.target_name:
            raise InvalidPayloadError(
                f"allow() got a {target.class_name} object for a "
                f"{self.request.target_name} trigger"
            )
        current = self.request.object
        if target is not None and current is not None and target.object_id != current.object_id:
            raise InvalidPayloadError(
                f"allow() got {target.class_name}/{target.object_id} while "
                f"{current.class_name}/{current.object_id} is being written"
            )
        self._terminal(Allow(target.snapshot() if target is not None else None), "allow")

    def reject(self, message: str = "") -> None:
        """Abort the operation; ``message`` is returned to the caller."""
        message = str(message) or f"{self.request.kind} rejected {self.request.target_name}"
        self._terminal(Reject(message, ErrorCode.VALIDATION_FAILED), "reject")

    def _fault_outcome(self, exc: BaseException) -> Reject:
        return Reject(describe_error(exc), code_of(exc))

    def _timeout_outcome(self, seconds: float) -> Reject:
        return Reject("handler timed out", ErrorCode.TIMEOUT)

    def _idle_outcome(self, err: NoResponseError) -> Reject:
        return Reject(str(err), err.code)


class AfterResponse(Response):
    """Response channel for afterSave / afterDelete.

    There is no terminal call: the invocation completes when the handler
    body and its tracked sub-operations finish.
    """

    def _on_idle(self) -> None:
        self._resolve(Success(None), "completed")

    def _fault_outcome(self, exc: BaseException) -> Failure:
        return Failure(code_of(exc), describe_error(exc))

    def _timeout_outcome(self, seconds: float) -> Failure:
        return Failure(
            ErrorCode.TIMEOUT,
            f"{self.request.kind} handler for {self.request.target_name!r} "
            f"timed out after {seconds:g}s",
        )

    def _idle_outcome(self, err: NoResponseError) -> Success:
        return Success(None)


_RESPONSES: dict[TriggerKind, type[Response]] = {
    TriggerKind.FUNCTION: FunctionResponse,
    TriggerKind.BEFORE_SAVE: BeforeResponse,
    TriggerKind.BEFORE_DELETE: BeforeResponse,
    TriggerKind.AFTER_SAVE: AfterResponse,
    TriggerKind.AFTER_DELETE: AfterResponse,
}


def response_for(request: Request) -> Response:
    """Create the response channel matching the request's kind."""
    return _RESPONSES[request.kind](request)


class ContextBuilder:
    """Builds Requests from inbound calls and storage events."""

    def __init__(
        self,
        sessions: SessionResolver | None = None,
        client_factory: Callable[[Entity | None], ObjectsClient] | None = None,
    ) -> None:
        self._sessions = sessions
        self._client_factory = client_factory

    def bind_client_factory(self, factory: Callable[[Entity | None], ObjectsClient]) -> None:
        self._client_factory = factory

    def resolve_user(self, session_token: str | None) -> Entity | None:
        """Resolve the acting user.

        No token means no user. A token that resolves to nothing raises.

        Raises:
            InvalidSessionError: If the token is unknown or expired.
        """
        if session_token is None:
            return None
        if self._sessions is None:
            raise InvalidSessionError()
        user = self._sessions.resolve(session_token)
        if user is None:
            raise InvalidSessionError()
        return user

    def for_function(
        self,
        name: str,
        params: Mapping[str, Any] | None,
        user: Entity | None = None,
    ) -> Request:
        """Context for a cloud function call. Params are copied, never validated."""
        if params is None:
            params = {}
        if not isinstance(params, Mapping):
            raise InvalidPayloadError(
                f"Function params must be an object, got {type(params).__name__}"
            )
        return Request(
            kind=TriggerKind.FUNCTION,
            target_name=name,
            params=copy.deepcopy(dict(params)),
            user=user.snapshot() if user is not None else None,
            objects=self._client(user),
        )

    def for_trigger(
        self,
        kind: TriggerKind | str,
        entity: Entity,
        user: Entity | None = None,
        original: Entity | None = None,
    ) -> Request:
        """Context for a lifecycle trigger.

        The handler gets a private snapshot of ``entity``; for afterDelete
        the snapshot is stale and refuses modification, save and refetch.
        """
        kind = TriggerKind(kind)
        if not kind.is_trigger:
            raise ValueError(f"{kind} is not a lifecycle trigger")
        obj = entity.frozen() if kind is TriggerKind.AFTER_DELETE else entity.snapshot()
        return Request(
            kind=kind,
            target_name=entity.class_name,
            object=obj,
            original=original.snapshot() if original is not None else None,
            user=user.snapshot() if user is not None else None,
            objects=self._client(user),
        )

    def _client(self, user: Entity | None) -> ObjectsClient | None:
        if self._client_factory is None:
            return None
        return self._client_factory(user)
