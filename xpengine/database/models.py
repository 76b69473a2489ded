"""
xpengine.database.models — SQLAlchemy 2.0 Data Models
======================================================

The engine persists through a namespaced key-value contract, so the schema
is a single table:

- kv_entries — one JSON value per (namespace path, key)

Namespace paths are the segments joined with ``/``, e.g.
``xp/default/1468816181854081229/users``.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all xpengine ORM models."""


# ---------------------------------------------------------------------------
# Key-value entries
# ---------------------------------------------------------------------------
class KVEntry(Base):
    __tablename__ = "kv_entries"

    namespace: Mapped[str] = mapped_column(String(255), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_kv_entries_namespace", "namespace"),
    )

    def __repr__(self) -> str:
        return f"<KVEntry {self.namespace}:{self.key}>"
