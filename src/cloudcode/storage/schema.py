"""SQLAlchemy ORM schema for cloudcode.

Defines the reference object store table, the operational log table and
the _cloudcode_meta table used for schema versioning.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all cloudcode ORM models."""

    pass


class ObjectRow(Base):
    """One stored object. Fields are kept as a JSON document."""

    __tablename__ = "objects"

    class_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    object_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_objects_class_created", "class_name", "created_at"),
    )


class LogRow(Base):
    """Append-only operational log entry. Maps 1:1 with LogRecord."""

    __tablename__ = "operational_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_name: Mapped[str] = mapped_column(String(255), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    invocation_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_oplog_target", "kind", "target_name"),
    )


class MetaRow(Base):
    """Key/value metadata for the database (schema version)."""

    __tablename__ = "_cloudcode_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
