"""
playstake.database.models — SQLAlchemy 2.0 Data Models
========================================================

The wagering engine talks to a path-addressed document store (see
:mod:`playstake.database.store`).  In this deployment the store lives in a
single relational table, so the schema is deliberately small.

Tables:
- documents          — One JSON value per path, with an optimistic version
- rate_limit_events  — Sliding-window anti-abuse counters
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all PlayStake ORM models."""


# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests).
JsonValue = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Document: one row per store path
# ---------------------------------------------------------------------------
class Document(Base):
    """A single JSON value addressed by a slash-separated path.

    ``parent`` is the path minus its last segment and is indexed so that
    child listings (``userChallenges/{uid}``) never scan the whole table.
    ``version`` is bumped on every write and is what compare-and-update
    compares against.
    """

    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(String(512), primary_key=True)
    parent: Mapped[str] = mapped_column(String(512), nullable=False)
    value: Mapped[dict] = mapped_column(JsonValue, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_documents_parent", "parent"),
    )

    def __repr__(self) -> str:
        return f"<Document path={self.path!r} v={self.version}>"


# ---------------------------------------------------------------------------
# RateLimitEvent: durable request events for per-operation throttling
# ---------------------------------------------------------------------------
class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"

    # BigInteger does not autoincrement on SQLite; INTEGER does.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_rate_limit_key_ts", "key", "timestamp"),
        Index("ix_rate_limit_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitEvent key={self.key!r} ts={self.timestamp}>"
