"""Function invoker -- runs cloud functions for external callers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from cloudcode.exceptions import CloudCodeError, ErrorCode, NotFoundError
from cloudcode.models.outcome import Failure, InvocationOutcome, Success, TriggerKind

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cloudcode.context import ContextBuilder
    from cloudcode.models.entity import Entity
    from cloudcode.registry import HandlerRegistry
    from cloudcode.sandbox import Sandbox

logger = logging.getLogger(__name__)


class FunctionCall(BaseModel):
    """Inbound function call.

    Wire shape: ``{"name": ..., "params": {...}, "sessionToken": ...}``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(min_length=1)
    params: dict[str, JsonValue] = Field(default_factory=dict)
    session_token: Optional[str] = Field(default=None, alias="sessionToken")


class FunctionInvoker:
    """Looks up, contextualizes and sandboxes cloud function calls.

    ``invoke`` is total: every call ends in exactly one Success or Failure.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        sandbox: Sandbox,
        builder: ContextBuilder,
    ) -> None:
        self.registry = registry
        self.sandbox = sandbox
        self.builder = builder

    def invoke(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        user: Entity | None = None,
    ) -> InvocationOutcome:
        registration = self.registry.lookup(TriggerKind.FUNCTION, name)
        if registration is None:
            err = NotFoundError(name)
            logger.info("%s", err)
            return Failure(err.code, str(err))

        try:
            request = self.builder.for_function(name, params, user)
        except CloudCodeError as exc:
            return Failure(exc.code, str(exc))

        outcome = self.sandbox.run(registration, request)
        if not isinstance(outcome, (Success, Failure)):
            logger.error("Function %s resolved with %r", name, outcome)
            return Failure(ErrorCode.INTERNAL_ERROR, "Internal error")
        return outcome

    def invoke_call(self, call: FunctionCall) -> InvocationOutcome:
        """Resolve the caller's session, then invoke."""
        try:
            user = self.builder.resolve_user(call.session_token)
        except CloudCodeError as exc:
            return Failure(exc.code, str(exc))
        return self.invoke(call.name, call.params, user)
