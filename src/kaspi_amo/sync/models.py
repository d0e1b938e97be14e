"""Persistence models for the synchronizer state.

Six SQLAlchemy models on the shared declarative Base:
- ProcessedOrderModel: one row per Kaspi order code (idempotency anchor)
- LockModel: named advisory locks with expiry
- MetaModel: string key/value store (heartbeat, watermark, counters)
- DailyStatsModel: per-day monotonic counters in the processing timezone
- ErrorLogModel: append-only error/audit trail
- OAuthTokenModel: amoCRM access/refresh token pair (single row)

All timestamps are stored as timezone-aware UTC values.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.kaspi_amo.core.database import Base


class ProcessedOrderModel(Base):
    """Sync state for one upstream order.

    Created on the first processing attempt (success or failure) and
    updated on every later attempt. ``crm_deal_id`` is the durable identity
    anchor: once set, the order is never created in the CRM again.
    """

    __tablename__ = "processed_orders"
    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_processed_orders_retry_count"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_code: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True, index=True
    )
    crm_deal_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    upstream_state: Mapped[str] = mapped_column(String(50), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(32), nullable=False)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class LockModel(Base):
    """Named advisory lock. Expired rows are free for the taking."""

    __tablename__ = "locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    locked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    holder_identity: Mapped[str] = mapped_column(String(200), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class MetaModel(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class DailyStatsModel(Base):
    """Per-day counters. Only ever incremented; created on first write."""

    __tablename__ = "daily_stats"

    stat_date: Mapped[date] = mapped_column("date", Date, primary_key=True)
    orders_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    contacts_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deals_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    total_processing_time_ms: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )
    timed_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_processing_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    api_errors_upstream: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    api_errors_crm: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rate_limit_hits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reconcile_updates: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ErrorLogModel(Base):
    __tablename__ = "error_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    error_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    error_message: Mapped[str] = mapped_column(String(500), nullable=False)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    order_code: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )


class OAuthTokenModel(Base):
    """amoCRM OAuth token pair. The client keeps exactly one row (id=1)."""

    __tablename__ = "oauth_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
