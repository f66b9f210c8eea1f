"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Datetimes are always written in UTC; SQLite hands them back naive.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, Date, DateTime, Text,
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
#  Leads & conversation (CRM-owned, read by the core)
# ──────────────────────────────────────────────────────────────

class LeadRow(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    full_name: Mapped[str] = mapped_column(String(256), default="")
    phone_number: Mapped[str] = mapped_column(String(64), default="")
    current_state: Mapped[str] = mapped_column(String(32), default="exploring")
    timeline: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    budget: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    location_preference: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    property_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    buyer_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    follow_up_eligible: Mapped[bool] = mapped_column(Boolean, default=True)
    follow_up_blocked_reason: Mapped[str] = mapped_column(String(128), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_leads_account", "account_id"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_lead_time", "lead_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Follow-up tasks
# ──────────────────────────────────────────────────────────────

class FollowUpTaskRow(Base):
    __tablename__ = "followup_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    follow_up_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sequence_stage: Mapped[int] = mapped_column(Integer, default=1)
    is_final_attempt: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error: Mapped[str] = mapped_column(Text, default="")
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    template_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    strategy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_tasks_due", "status", "scheduled_time"),
        Index("ix_tasks_lead", "lead_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    category: Mapped[str] = mapped_column(String(32), default="standard")
    content: Mapped[str] = mapped_column(Text, default="")
    lead_state: Mapped[str] = mapped_column(String(32), default="default")
    stage_category: Mapped[str] = mapped_column(String(32), default="generic")
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    response_rate: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0)
    remote_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="approved")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_templates_account_status", "account_id", "status"),
        Index("ix_templates_lookup", "account_id", "lead_state", "stage_category"),
    )


# ──────────────────────────────────────────────────────────────
#  Tracking & metrics
# ──────────────────────────────────────────────────────────────

class TrackingRow(Base):
    __tablename__ = "followup_tracking"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    follow_up_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    strategy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    response_received: Mapped[bool] = mapped_column(Boolean, default=False)
    response_time_minutes: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    led_to_appointment: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_tracking_account_sent", "account_id", "sent_at"),
    )


class DailyMetricsRow(Base):
    __tablename__ = "followup_daily_metrics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    metrics: Mapped[Any] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "day", name="uq_daily_metrics_account_day"),
    )
