"""cloudcode exception hierarchy.

All engine exceptions inherit from CloudCodeError and carry the
ErrorCode they render as on the wire.
"""

from __future__ import annotations

import enum


class ErrorCode(enum.IntEnum):
    """Fixed wire-level error taxonomy."""

    INTERNAL_ERROR = 1
    NOT_FOUND = 101
    INVALID_PAYLOAD = 107
    OPERATION_FORBIDDEN = 119
    TIMEOUT = 124
    SCRIPT_FAILED = 141
    VALIDATION_FAILED = 142
    INVALID_SESSION = 209


class CloudCodeError(Exception):
    """Base exception for all cloudcode errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR


class NotFoundError(CloudCodeError):
    """Raised when no cloud function is registered under a name."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Invalid function: {name!r}")


class ObjectNotFoundError(NotFoundError):
    """Raised when an object lookup in the store fails."""

    def __init__(self, class_name: str, object_id: str | None) -> None:
        self.class_name = class_name
        self.object_id = object_id
        CloudCodeError.__init__(
            self, f"Object not found: {class_name}/{object_id}"
        )


class ValidationRejection(CloudCodeError):
    """Raised when a before-trigger explicitly rejects an operation."""

    code = ErrorCode.VALIDATION_FAILED


class HandlerTimeoutError(CloudCodeError, TimeoutError):
    """Raised when a handler exceeds its wall-clock bound."""

    code = ErrorCode.TIMEOUT


class InternalError(CloudCodeError):
    """Raised when a handler fails with an uncaught exception."""

    code = ErrorCode.INTERNAL_ERROR


class StaleObjectError(CloudCodeError):
    """Raised when an immutable delete snapshot is modified, saved or refetched."""

    code = ErrorCode.OPERATION_FORBIDDEN

    def __init__(self, class_name: str, object_id: str | None) -> None:
        self.class_name = class_name
        self.object_id = object_id
        super().__init__(
            f"{class_name}/{object_id} is a deleted snapshot and cannot be "
            f"modified, saved or refetched"
        )


class NoResponseError(CloudCodeError):
    """Raised when a handler finishes without a terminal call."""

    code = ErrorCode.SCRIPT_FAILED


class DoubleResponseError(CloudCodeError):
    """Raised when a handler makes a second terminal call."""

    code = ErrorCode.SCRIPT_FAILED


class InvalidSessionError(CloudCodeError):
    """Raised when a session token does not resolve to a user."""

    code = ErrorCode.INVALID_SESSION

    def __init__(self) -> None:
        super().__init__("Invalid session token")


class InvalidPayloadError(CloudCodeError):
    """Raised when a value is not representable as JSON."""

    code = ErrorCode.INVALID_PAYLOAD


class RegistrationError(CloudCodeError):
    """Raised when a handler registration is malformed."""


class DeploymentError(CloudCodeError):
    """Raised when a deployment module cannot be loaded."""


class IllegalTransitionError(CloudCodeError):
    """Raised when a mutation event is driven through an illegal state change."""


_BY_CODE: dict[ErrorCode, type[CloudCodeError]] = {
    ErrorCode.VALIDATION_FAILED: ValidationRejection,
    ErrorCode.TIMEOUT: HandlerTimeoutError,
    ErrorCode.SCRIPT_FAILED: NoResponseError,
    ErrorCode.INVALID_PAYLOAD: InvalidPayloadError,
    ErrorCode.INTERNAL_ERROR: InternalError,
}


def code_of(exc: BaseException) -> ErrorCode:
    """Return the wire code for an exception; unknown faults are internal errors."""
    if isinstance(exc, CloudCodeError):
        return exc.code
    return ErrorCode.INTERNAL_ERROR


def error_for(code: ErrorCode, message: str) -> CloudCodeError:
    """Build the exception a caller sees for a failed code/message pair."""
    cls = _BY_CODE.get(code)
    if cls is None:
        exc = CloudCodeError(message)
        exc.code = code
        return exc
    return cls(message)
