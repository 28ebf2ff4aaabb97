"""Wire rendering for outcomes and verdicts.

Every result renders to exactly one envelope:

    {"result": value}                  Success, Allow
    {"code": int, "error": str}        Failure, Reject

Nothing here has side effects.
"""

from __future__ import annotations

from typing import Any

from cloudcode.exceptions import CloudCodeError, ErrorCode
from cloudcode.models.outcome import Allow, Failure, Reject, Success

GENERIC_ERROR = "Internal error"

_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.INTERNAL_ERROR: 500,
}


def _error(code: int, message: str) -> dict[str, Any]:
    return {"code": int(code), "error": message}


def render(result: Success | Failure | Allow | Reject) -> dict[str, Any]:
    """Render an outcome or verdict as a wire envelope.

    Raises:
        TypeError: If ``result`` is none of the four outcome types.
    """
    if isinstance(result, Success):
        return {"result": result.value}
    if isinstance(result, Failure):
        return _error(result.code, result.message)
    if isinstance(result, Allow):
        return {"result": result.object.to_json() if result.object is not None else None}
    if isinstance(result, Reject):
        return _error(result.code, result.message)
    raise TypeError(f"Cannot render {type(result).__name__}")


def render_error(exc: BaseException) -> dict[str, Any]:
    """Render an exception; anything outside the engine hierarchy is generic."""
    if isinstance(exc, CloudCodeError):
        return _error(exc.code, str(exc))
    return _error(ErrorCode.INTERNAL_ERROR, GENERIC_ERROR)


def status_for(result: Success | Failure | Allow | Reject | BaseException) -> int:
    """HTTP status to send alongside the envelope."""
    if isinstance(result, (Success, Allow)):
        return 200
    if isinstance(result, (Failure, Reject)):
        code = result.code
    elif isinstance(result, CloudCodeError):
        code = result.code
    else:
        return 500
    return _STATUS.get(code, 400)
