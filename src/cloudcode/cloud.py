"""Cloud facade -- the public entry point for cloudcode.

Wires the handler registry, sandbox, context builder, dispatcher, invoker,
object store and operational log together. Register handlers with the
decorators, then call functions and save/delete objects through it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from cloudcode.client import ObjectsClient, Query
from cloudcode.context import ContextBuilder
from cloudcode.dispatcher import TriggerDispatcher
from cloudcode.exceptions import ErrorCode
from cloudcode.invoker import FunctionCall, FunctionInvoker
from cloudcode.marshal import render
from cloudcode.models.config import EngineConfig
from cloudcode.models.entity import Entity
from cloudcode.models.outcome import Failure, InvocationOutcome, TriggerKind
from cloudcode.oplog import OperationalLog
from cloudcode.registry import Handler, HandlerRegistration, HandlerRegistry
from cloudcode.sandbox import Sandbox
from cloudcode.storage.engine import create_cloud_engine, create_session_factory, init_db
from cloudcode.storage.sqlite import SqlLogRepository, SqlObjectStore, StoreSessionResolver

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from cloudcode.storage.repositories import ObjectStore, SessionResolver

logger = logging.getLogger(__name__)


class Cloud:
    """A cloud code engine instance.

    Create via ``Cloud.open()`` rather than direct construction.

    Example::

        with Cloud.open() as cloud:
            @cloud.define("hello")
            def hello(request, response):
                response.success(f"Hello {request.params.get('name', 'world')}")

            cloud.run("hello", {"name": "Ada"})  # Success(value='Hello Ada')
    """

    def __init__(
        self,
        *,
        config: EngineConfig,
        registry: HandlerRegistry,
        sandbox: Sandbox,
        builder: ContextBuilder,
        dispatcher: TriggerDispatcher,
        invoker: FunctionInvoker,
        store: ObjectStore,
        oplog: OperationalLog,
        engine: Engine | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._sandbox = sandbox
        self._builder = builder
        self._dispatcher = dispatcher
        self._invoker = invoker
        self._store = store
        self._oplog = oplog
        self._engine = engine
        self._closed = False

    @classmethod
    def open(
        cls,
        path: str = ":memory:",
        *,
        config: EngineConfig | None = None,
        store: ObjectStore | None = None,
        sessions: SessionResolver | None = None,
    ) -> Cloud:
        """Open an engine.

        Args:
            path: SQLite path for the reference store. ``":memory:"`` by
                default. Ignored when *config* is given.
            config: Engine configuration. Defaults created if *None*.
            store: External object store. The SQL reference store is used
                if *None*.
            sessions: Session resolver. Defaults to resolving ``_Session``
                objects in the store.

        Returns:
            A ready-to-use ``Cloud`` instance.
        """
        if config is None:
            config = EngineConfig(db_path=path)

        # Engine (only when something needs SQL)
        engine = None
        session_factory = None
        db_lock = threading.RLock()
        if store is None or config.persist_log:
            engine = create_cloud_engine(config.db_path, url=config.db_url)
            init_db(engine)
            session_factory = create_session_factory(engine)

        if store is None:
            store = SqlObjectStore(session_factory, lock=db_lock)
        if sessions is None:
            sessions = StoreSessionResolver(store)

        log_repo = (
            SqlLogRepository(session_factory, lock=db_lock) if config.persist_log else None
        )
        oplog = OperationalLog(log_repo, capacity=config.log_capacity)

        registry = HandlerRegistry()
        sandbox = Sandbox.from_config(config, oplog)
        builder = ContextBuilder(sessions)
        dispatcher = TriggerDispatcher(registry, sandbox, builder, store, oplog)
        invoker = FunctionInvoker(registry, sandbox, builder)
        builder.bind_client_factory(lambda user: ObjectsClient(store, dispatcher, user))

        return cls(
            config=config,
            registry=registry,
            sandbox=sandbox,
            builder=builder,
            dispatcher=dispatcher,
            invoker=invoker,
            store=store,
            oplog=oplog,
            engine=engine,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def dispatcher(self) -> TriggerDispatcher:
        return self._dispatcher

    @property
    def invoker(self) -> FunctionInvoker:
        return self._invoker

    @property
    def store(self) -> ObjectStore:
        return self._store

    @property
    def log(self) -> OperationalLog:
        return self._oplog

    @property
    def objects(self) -> ObjectsClient:
        """Storage client with no acting user. Writes fire triggers."""
        return ObjectsClient(self._store, self._dispatcher)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        kind: TriggerKind | str,
        target_name: str,
        handler: Handler,
        *,
        timeout: float | None = None,
    ) -> HandlerRegistration:
        """Register a handler, replacing any previous one for the same key."""
        registration = self._registry.register(kind, target_name, handler, timeout=timeout)
        logger.debug(
            "Registered %s %s -> %s", registration.kind, target_name, registration.handler_name
        )
        return registration

    def _decorator(
        self,
        kind: TriggerKind,
        target_name: str,
        handler: Handler | None,
        timeout: float | None,
    ) -> Any:
        if handler is not None:
            self.register(kind, target_name, handler, timeout=timeout)
            return handler

        def decorate(fn: Handler) -> Handler:
            self.register(kind, target_name, fn, timeout=timeout)
            return fn

        return decorate

    def define(
        self, name: str, handler: Handler | None = None, *, timeout: float | None = None
    ) -> Any:
        """Register a cloud function. Usable as ``@cloud.define("name")``."""
        return self._decorator(TriggerKind.FUNCTION, name, handler, timeout)

    def before_save(
        self, class_name: str, handler: Handler | None = None, *, timeout: float | None = None
    ) -> Any:
        return self._decorator(TriggerKind.BEFORE_SAVE, class_name, handler, timeout)

    def after_save(
        self, class_name: str, handler: Handler | None = None, *, timeout: float | None = None
    ) -> Any:
        return self._decorator(TriggerKind.AFTER_SAVE, class_name, handler, timeout)

    def before_delete(
        self, class_name: str, handler: Handler | None = None, *, timeout: float | None = None
    ) -> Any:
        return self._decorator(TriggerKind.BEFORE_DELETE, class_name, handler, timeout)

    def after_delete(
        self, class_name: str, handler: Handler | None = None, *, timeout: float | None = None
    ) -> Any:
        return self._decorator(TriggerKind.AFTER_DELETE, class_name, handler, timeout)

    def load(self, target: str) -> None:
        """Load a deployment file or module and run its ``deploy(cloud)``."""
        from cloudcode.deployment import load_deployment

        load_deployment(self, target)

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def run(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        session_token: str | None = None,
    ) -> InvocationOutcome:
        """Invoke a cloud function and return its outcome. Never raises for handler behaviour."""
        self._check_open()
        call = FunctionCall.model_construct(
            name=name, params=dict(params or {}), session_token=session_token
        )
        return self._invoker.invoke_call(call)

    def call(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Wire entry point: ``{name, params, sessionToken}`` in, envelope out."""
        self._check_open()
        try:
            call = FunctionCall.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(p) for p in first["loc"]) or "payload"
            return render(Failure(ErrorCode.INVALID_PAYLOAD, f"{location}: {first['msg']}"))
        return render(self._invoker.invoke_call(call))

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def save(self, entity: Entity, *, session_token: str | None = None) -> Entity:
        """Save through the triggers and return the committed snapshot.

        Raises:
            InvalidSessionError: If the session token is unknown.
            ValidationRejection: If a beforeSave trigger rejects the save.
            HandlerTimeoutError: If the beforeSave trigger timed out.
        """
        self._check_open()
        user = self._builder.resolve_user(session_token)
        event = self._dispatcher.save(entity, user=user)
        event.raise_if_rejected()
        return event.committed

    def delete(
        self, class_name: str, object_id: str, *, session_token: str | None = None
    ) -> None:
        """Delete through the triggers.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ValidationRejection: If a beforeDelete trigger rejects the delete.
        """
        self._check_open()
        user = self._builder.resolve_user(session_token)
        event = self._dispatcher.delete(Entity(class_name, object_id=object_id), user=user)
        event.raise_if_rejected()

    def get(self, class_name: str, object_id: str) -> Entity | None:
        return self._store.get(class_name, object_id)

    def query(self, class_name: str) -> Query:
        return Query(self._store, class_name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Cloud is closed")

    def close(self, wait: bool = True) -> None:
        """Drain detached after-triggers, stop the sandbox and dispose the engine."""
        if self._closed:
            return
        self._closed = True
        self._sandbox.shutdown(wait=wait)
        if self._engine is not None:
            self._engine.dispose()

    def __enter__(self) -> Cloud:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"{len(self._registry)} handlers"
        return f"<Cloud: {self._config.db_path}, {state}>"
