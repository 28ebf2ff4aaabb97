"""Execution sandbox -- runs one handler invocation with a wall-clock bound.

Each invocation runs on a worker thread and the caller waits on the
invocation's Response for at most the timeout. Whatever the handler
does (raise, hang, respond twice, never respond) the caller gets back
exactly one outcome and is never blocked past the bound.

Handler bodies and work started with ``response.spawn()`` each get a
thread of their own. A thread cannot be killed, so a handler that
ignores its timeout keeps only its own thread; nothing else queues
behind it. Detached invocations (after-triggers) run on a bounded
supervisor pool, and each supervisor waits on its handler like a
normal caller, so it is released at the timeout.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from cloudcode.context import Request, Response, describe_error, response_for
from cloudcode.models.outcome import Failure, Reject, Success, TriggerKind

if TYPE_CHECKING:
    from cloudcode.exceptions import CloudCodeError
    from cloudcode.models.config import EngineConfig
    from cloudcode.oplog import OperationalLog
    from cloudcode.registry import HandlerRegistration

logger = logging.getLogger(__name__)


def _outcome_detail(outcome: Any) -> str | None:
    if isinstance(outcome, (Failure, Reject)):
        return outcome.message
    return None


class ThreadPerCall(Executor):
    """Executor that starts a fresh daemon thread for every submitted call.

    Nothing is ever queued: a call starts as soon as it is submitted, no
    matter how many earlier calls are still running.
    """

    def __init__(self, thread_name_prefix: str) -> None:
        self._prefix = thread_name_prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._shutdown = False

    def submit(self, fn: Any, /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new calls after shutdown")
            name = f"{self._prefix}-{next(self._counter)}"
        thread = threading.Thread(
            target=self._work, args=(future, fn, args, kwargs), name=name, daemon=True
        )
        thread.start()
        return future

    @staticmethod
    def _work(future: Future, fn: Any, args: tuple, kwargs: dict) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        """Refuse new calls. Running threads are never joined."""
        with self._lock:
            self._shutdown = True


class Sandbox:
    """Time-bounded, fault-contained handler execution.

    Usage::

        sandbox = Sandbox(function_timeout=5.0)
        outcome = sandbox.run(registration, request)
    """

    def __init__(
        self,
        *,
        function_timeout: float = 15.0,
        trigger_timeout: float = 3.0,
        max_workers: int = 16,
        oplog: OperationalLog | None = None,
    ) -> None:
        self.function_timeout = function_timeout
        self.trigger_timeout = trigger_timeout
        self._oplog = oplog
        self._handlers = ThreadPerCall("cloudcode-handler")
        self._sub_operations = ThreadPerCall("cloudcode-subop")
        self._supervisors = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="cloudcode-supervisor"
        )
        self._closed = False

    @classmethod
    def from_config(cls, config: EngineConfig, oplog: OperationalLog | None = None) -> Sandbox:
        return cls(
            function_timeout=config.function_timeout,
            trigger_timeout=config.trigger_timeout,
            max_workers=config.max_workers,
            oplog=oplog,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def timeout_for(self, registration: HandlerRegistration) -> float:
        """Registration timeout, else the default for its kind."""
        if registration.timeout is not None:
            return registration.timeout
        if registration.kind is TriggerKind.FUNCTION:
            return self.function_timeout
        return self.trigger_timeout

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        registration: HandlerRegistration,
        request: Request,
        response: Response | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Run one invocation and return its outcome.

        Returns a Success/Failure for functions and after-triggers, or an
        Allow/Reject verdict for before-triggers. Never raises for
        anything the handler does.

        Raises:
            RuntimeError: If the sandbox has been shut down.
        """
        if self._closed:
            raise RuntimeError("Sandbox is shut down")
        if response is None:
            response = response_for(request)
        limit = timeout if timeout is not None else self.timeout_for(registration)

        response._bind(self._sub_operations, on_defect=self._on_defect)
        self._handlers.submit(self._execute, registration, request, response)
        if not response.wait(limit):
            response._expire(limit)

        self._report(registration, request, response)
        return response.outcome

    def detach(
        self,
        registration: HandlerRegistration,
        request: Request,
        response: Response | None = None,
        *,
        timeout: float | None = None,
    ) -> Future:
        """Run an invocation on a supervisor thread without waiting for it.

        The returned future resolves to the outcome. Callers on the request
        path must not join it.
        """
        if self._closed:
            raise RuntimeError("Sandbox is shut down")
        return self._supervisors.submit(
            self.run, registration, request, response, timeout=timeout
        )

    def _execute(
        self, registration: HandlerRegistration, request: Request, response: Response
    ) -> None:
        try:
            registration.handler(request, response)
        except Exception as exc:
            logger.debug(
                "%s handler for %s raised %s",
                registration.kind,
                registration.target_name,
                type(exc).__name__,
                exc_info=True,
            )
            response._fail(exc)
        finally:
            response._finish_body()

    # ------------------------------------------------------------------
    # Operational log
    # ------------------------------------------------------------------

    def _report(
        self, registration: HandlerRegistration, request: Request, response: Response
    ) -> None:
        if self._oplog is None:
            return
        kind = registration.kind
        outcome = response.outcome
        source = response.resolved_by

        if source == "timeout":
            label = "timeout"
        elif source == "fault":
            label = "failure"
        elif kind.is_after:
            label = "success" if isinstance(outcome, Success) else "failure"
        else:
            return

        detail = _outcome_detail(outcome)
        if source == "fault" and response.fault is not None:
            detail = f"{type(response.fault).__name__}: {describe_error(response.fault)}"
        self._oplog.record(
            kind,
            registration.target_name,
            label,
            detail,
            invocation_id=request.invocation_id,
        )

    def _on_defect(self, response: Response, err: CloudCodeError) -> None:
        if self._oplog is None:
            logger.warning(
                "%s %s: %s", response.request.kind, response.request.target_name, err
            )
            return
        self._oplog.record(
            response.request.kind,
            response.request.target_name,
            "defect",
            f"{type(err).__name__}: {err}",
            invocation_id=response.request.invocation_id,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work.

        With ``wait=True`` detached invocations already scheduled are
        allowed to finish (each is bounded by its timeout). Handler threads
        that outlived their timeout are abandoned, not joined.
        """
        if self._closed:
            return
        self._closed = True
        self._supervisors.shutdown(wait=wait)
        self._handlers.shutdown(wait=False)
        self._sub_operations.shutdown(wait=False)
