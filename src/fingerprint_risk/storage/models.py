"""SQLAlchemy models for persistent storage.

This module defines the database schema for identities, their tracked
actions, fraud determinations and rate-limit counters.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IdentityModel(Base):
    """SQLAlchemy model for identities.

    One row per (device signal hash, account) pair. Sub-fingerprints are
    stored as digests so sibling lookups can use plain indexes.
    """

    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    device_signal_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    account_ref: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    signals: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    canvas_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    webgl_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    audio_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ml_anomaly_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("device_signal_hash", "account_ref", name="uq_identity_hash_account"),
        Index("idx_identities_hash", "device_signal_hash"),
        Index("idx_identities_canvas", "canvas_hash"),
        Index("idx_identities_webgl", "webgl_hash"),
        Index("idx_identities_audio", "audio_hash"),
        Index("idx_identities_risk_score", "risk_score"),
    )


class TrackedActionModel(Base):
    """SQLAlchemy model for tracked actions. Rows are never updated."""

    __tablename__ = "tracked_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    identity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("identities.id"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    referrer: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    target: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_tracked_actions_lookup", "identity_id", "action_type", "occurred_at"),
        Index("idx_tracked_actions_occurred", "occurred_at"),
    )


class RiskEventModel(Base):
    """SQLAlchemy model for risk events.

    The detail blob lives in a column named ``metadata``, which is
    reserved on declarative classes, hence the ``details`` attribute.
    """

    __tablename__ = "risk_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    identity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("identities.id"), nullable=False
    )
    risk_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    risk_score: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    patterns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_risk_events_identity", "identity_id", "created_at"),
        Index("idx_risk_events_type", "risk_type", "created_at"),
    )


class RateLimitWindowModel(Base):
    """SQLAlchemy model for fixed-window rate-limit counters."""

    __tablename__ = "rate_limit_windows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("identity_id", "action_type", name="uq_rate_limit_identity_action"),
        Index("idx_rate_limit_window_start", "window_start"),
    )
