"""Storage collaborators: abstract interfaces plus a SQLAlchemy reference implementation."""

from cloudcode.storage.engine import create_cloud_engine, create_session_factory, init_db
from cloudcode.storage.repositories import LogRepository, ObjectStore, SessionResolver
from cloudcode.storage.sqlite import SqlLogRepository, SqlObjectStore, StoreSessionResolver

__all__ = [
    "create_cloud_engine",
    "create_session_factory",
    "init_db",
    "ObjectStore",
    "SessionResolver",
    "LogRepository",
    "SqlObjectStore",
    "SqlLogRepository",
    "StoreSessionResolver",
]
