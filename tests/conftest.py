"""Shared test fixtures for cloudcode.

Provides in-memory engines, stores, and a ready-to-use Cloud.
"""

from __future__ import annotations

import threading

import pytest

from cloudcode.cloud import Cloud
from cloudcode.context import ContextBuilder
from cloudcode.models.config import EngineConfig
from cloudcode.models.entity import Entity
from cloudcode.oplog import OperationalLog
from cloudcode.registry import HandlerRegistry
from cloudcode.sandbox import Sandbox
from cloudcode.storage.engine import create_cloud_engine, create_session_factory, init_db
from cloudcode.storage.sqlite import SqlLogRepository, SqlObjectStore, StoreSessionResolver

# Short bounds keep timeout tests fast.
FAST_FUNCTION_TIMEOUT = 0.5
FAST_TRIGGER_TIMEOUT = 0.3


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_cloud_engine(":memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_lock():
    return threading.RLock()


@pytest.fixture
def store(session_factory, db_lock) -> SqlObjectStore:
    return SqlObjectStore(session_factory, lock=db_lock)


@pytest.fixture
def log_repo(session_factory, db_lock) -> SqlLogRepository:
    return SqlLogRepository(session_factory, lock=db_lock)


@pytest.fixture
def oplog() -> OperationalLog:
    return OperationalLog()


@pytest.fixture
def sandbox(oplog):
    sb = Sandbox(
        function_timeout=FAST_FUNCTION_TIMEOUT,
        trigger_timeout=FAST_TRIGGER_TIMEOUT,
        max_workers=8,
        oplog=oplog,
    )
    yield sb
    sb.shutdown(wait=False)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def builder(store) -> ContextBuilder:
    return ContextBuilder(StoreSessionResolver(store))


@pytest.fixture
def cloud():
    """In-memory Cloud with short timeouts."""
    config = EngineConfig(
        function_timeout=FAST_FUNCTION_TIMEOUT,
        trigger_timeout=FAST_TRIGGER_TIMEOUT,
        max_workers=8,
    )
    c = Cloud.open(config=config)
    yield c
    c.close(wait=False)


@pytest.fixture
def release():
    """Event that blocking handlers wait on; set at teardown so no thread outlives the test."""
    event = threading.Event()
    yield event
    event.set()


# ------------------------------------------------------------------
# Shared test helpers
# ------------------------------------------------------------------

def make_user(store, username: str = "ada", token: str = "r:token-1") -> Entity:
    """Store a _User and a _Session pointing at it. Returns the user."""
    user = store.save(Entity("_User", {"username": username}))
    store.save(
        Entity(
            "_Session",
            {
                "sessionToken": token,
                "user": {"__type": "Pointer", "className": "_User", "objectId": user.object_id},
            },
        )
    )
    return user


def review(movie: str = "The Matrix", stars: int = 5, **extra) -> Entity:
    return Entity("Review", {"movie": movie, "stars": stars, **extra})
