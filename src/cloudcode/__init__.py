"""cloudcode: server-side cloud functions and lifecycle triggers.

Register named functions and beforeSave/afterSave/beforeDelete/afterDelete
triggers, then run them sandboxed with bounded time around object store
writes.
"""

from cloudcode._version import __version__

# Core entry point
from cloudcode.cloud import Cloud

# Handler-facing types
from cloudcode.client import ObjectsClient, Query
from cloudcode.context import (
    AfterResponse,
    BeforeResponse,
    ContextBuilder,
    FunctionResponse,
    Request,
    Response,
)

# Domain models
from cloudcode.models.config import EngineConfig
from cloudcode.models.entity import Entity
from cloudcode.models.log import LogRecord
from cloudcode.models.outcome import (
    Allow,
    Failure,
    InvocationOutcome,
    Reject,
    Success,
    TriggerKind,
    Verdict,
)

# Engine components
from cloudcode.dispatcher import MutationEvent, MutationState, TriggerDispatcher
from cloudcode.invoker import FunctionCall, FunctionInvoker
from cloudcode.marshal import render, render_error, status_for
from cloudcode.oplog import OperationalLog
from cloudcode.registry import HandlerRegistration, HandlerRegistry
from cloudcode.sandbox import Sandbox

# Storage interfaces
from cloudcode.storage.repositories import LogRepository, ObjectStore, SessionResolver

# Exceptions
from cloudcode.exceptions import (
    CloudCodeError,
    DeploymentError,
    DoubleResponseError,
    ErrorCode,
    HandlerTimeoutError,
    IllegalTransitionError,
    InternalError,
    InvalidPayloadError,
    InvalidSessionError,
    NoResponseError,
    NotFoundError,
    ObjectNotFoundError,
    RegistrationError,
    StaleObjectError,
    ValidationRejection,
)

__all__ = [
    "__version__",
    # Core
    "Cloud",
    # Handler-facing
    "ObjectsClient",
    "Query",
    "Request",
    "Response",
    "FunctionResponse",
    "BeforeResponse",
    "AfterResponse",
    "ContextBuilder",
    # Models
    "EngineConfig",
    "Entity",
    "LogRecord",
    "Allow",
    "Failure",
    "InvocationOutcome",
    "Reject",
    "Success",
    "TriggerKind",
    "Verdict",
    # Engine
    "MutationEvent",
    "MutationState",
    "TriggerDispatcher",
    "FunctionCall",
    "FunctionInvoker",
    "render",
    "render_error",
    "status_for",
    "OperationalLog",
    "HandlerRegistration",
    "HandlerRegistry",
    "Sandbox",
    # Storage
    "ObjectStore",
    "SessionResolver",
    "LogRepository",
    # Exceptions
    "CloudCodeError",
    "DeploymentError",
    "DoubleResponseError",
    "ErrorCode",
    "HandlerTimeoutError",
    "IllegalTransitionError",
    "InternalError",
    "InvalidPayloadError",
    "InvalidSessionError",
    "NoResponseError",
    "NotFoundError",
    "ObjectNotFoundError",
    "RegistrationError",
    "StaleObjectError",
    "ValidationRejection",
]
