"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Tables:
  dispatch_jobs        one row per bulk-dispatch job, counters and lease
  dispatch_recipients  frozen, ordered audience snapshot with per-row status
  dispatch_errors      append-only failure log

JSON columns map to jsonb on PostgreSQL, native JSON on MySQL and TEXT on
SQLite. Job and snapshot keys are uuid hex strings; error rows use an
autoincrement key so the log keeps its write order.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, Float, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────────────────

class DispatchJobRow(Base):
    __tablename__ = "dispatch_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    audience_selector: Mapped[str] = mapped_column(String(512), nullable=False)
    template: Mapped[Any] = mapped_column(JSON, default=dict)

    total_candidates: Mapped[int] = mapped_column(Integer, default=0)
    valid_candidates: Mapped[int] = mapped_column(Integer, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(String(32), default="pending")
    current_recipient_label: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    interval_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    audience_snapshot: Mapped[bool] = mapped_column(Boolean, default=False)

    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_send_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_dispatch_jobs_status", "status"),
        Index("ix_dispatch_jobs_created", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Recipient snapshot
# ──────────────────────────────────────────────────────────────

class DispatchRecipientRow(Base):
    __tablename__ = "dispatch_recipients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    job_id: Mapped[str] = mapped_column(String(64), ForeignKey("dispatch_jobs.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(256), default="")
    recipient: Mapped[Any] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(16), default="pending")
    delivery_ref: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_dispatch_recipients_job_position"),
        Index("ix_dispatch_recipients_job_status", "job_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Error log
# ──────────────────────────────────────────────────────────────

class DispatchErrorRow(Base):
    __tablename__ = "dispatch_errors"

    # insertion order breaks timestamp ties when the log is read back
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), ForeignKey("dispatch_jobs.id"), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(256), default="")
    recipient_label: Mapped[str] = mapped_column(String(256), default="")
    reason: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_dispatch_errors_job_ts", "job_id", "timestamp"),
    )
