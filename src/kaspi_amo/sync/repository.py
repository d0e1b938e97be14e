"""Sync state repository -- async access to every persisted table.

Provides SyncRepository with the session_factory callable pattern. It is
the only component that touches the database besides the LockManager:
pipelines read and write processed orders, metadata, daily statistics,
the error log and OAuth tokens exclusively through it.

Timestamps leave the repository as timezone-aware UTC datetimes even on
backends (SQLite) that drop the offset on storage.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select

from src.kaspi_amo.core.database import SessionFactory
from src.kaspi_amo.sync.models import (
    DailyStatsModel,
    ErrorLogModel,
    MetaModel,
    OAuthTokenModel,
    ProcessedOrderModel,
)
from src.kaspi_amo.sync.schemas import (
    DailyStatsRead,
    ErrorLogRead,
    ErrorRecord,
    OAuthTokens,
    OrderOutcome,
    ProcessedOrderRead,
    StatsIncrement,
)

logger = structlog.get_logger(__name__)

# ── Metadata Keys ───────────────────────────────────────────────────────────

HEARTBEAT_KEY = "heartbeat_utc"
CONSECUTIVE_FAILURES_KEY = "consecutive_failures"
RECONCILE_WATERMARK_KEY = "reconcile_watermark_utc"
TOTAL_PROCESSED_KEY = "total_orders_processed"
TOTAL_FAILED_KEY = "total_orders_failed"
LAST_ERROR_AT_KEY = "last_error_utc"
LAST_ERROR_MESSAGE_KEY = "last_error_message"

ERROR_MESSAGE_MAX_LENGTH = 500
_TOKEN_ROW_ID = 1


# ── Helpers ─────────────────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date(tz_name: str, at: datetime | None = None) -> date:
    """Calendar date of ``at`` (default now) in the processing timezone."""
    at = at or utcnow()
    return at.astimezone(ZoneInfo(tz_name)).date()


def truncate_message(message: str, limit: int = ERROR_MESSAGE_MAX_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        logger.warning("repository.bad_timestamp", value=raw)
        return None


def _model_to_order(model: ProcessedOrderModel) -> ProcessedOrderRead:
    """Convert ProcessedOrderModel to ProcessedOrderRead schema."""
    return ProcessedOrderRead(
        order_code=model.order_code,
        crm_deal_id=model.crm_deal_id,
        upstream_state=model.upstream_state,
        fingerprint=model.fingerprint,
        processing_time_ms=model.processing_time_ms or 0,
        retry_count=model.retry_count or 0,
        last_error=model.last_error,
        last_synced_at=as_utc(model.last_synced_at),
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _model_to_stats(model: DailyStatsModel) -> DailyStatsRead:
    return DailyStatsRead(
        stat_date=model.stat_date,
        orders_processed=model.orders_processed,
        orders_failed=model.orders_failed,
        contacts_created=model.contacts_created,
        deals_created=model.deals_created,
        total_amount=model.total_amount,
        total_processing_time_ms=model.total_processing_time_ms,
        timed_orders=model.timed_orders,
        avg_processing_time_ms=model.avg_processing_time_ms,
        api_errors_upstream=model.api_errors_upstream,
        api_errors_crm=model.api_errors_crm,
        rate_limit_hits=model.rate_limit_hits,
        reconcile_updates=model.reconcile_updates,
    )


def _model_to_error(model: ErrorLogModel) -> ErrorLogRead:
    return ErrorLogRead(
        id=model.id,
        error_type=model.error_type,
        error_message=model.error_message,
        error_details=model.error_details,
        order_code=model.order_code,
        occurred_at=as_utc(model.occurred_at),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Async persistence for the synchronizer state.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Processed Orders ────────────────────────────────────────────────────

    async def get_processed_order(self, order_code: str) -> ProcessedOrderRead | None:
        """Get the persisted record for an order code.

        Args:
            order_code: Kaspi order code (natural key).

        Returns:
            ProcessedOrderRead if the order was ever attempted, None otherwise.
        """
        async for session in self._session_factory():
            stmt = select(ProcessedOrderModel).where(
                ProcessedOrderModel.order_code == order_code
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_order(model)

    async def save_processed_order(self, outcome: OrderOutcome) -> ProcessedOrderRead:
        """Insert or update the record for ``outcome.order_code``.

        ``last_synced_at`` is stamped on every write. ``created_at`` is kept
        from the first attempt.
        """
        now = utcnow()
        async for session in self._session_factory():
            stmt = select(ProcessedOrderModel).where(
                ProcessedOrderModel.order_code == outcome.order_code
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = ProcessedOrderModel(order_code=outcome.order_code, created_at=now)
                session.add(model)
            else:
                model.updated_at = now

            model.crm_deal_id = outcome.crm_deal_id
            model.upstream_state = outcome.upstream_state
            model.fingerprint = outcome.fingerprint
            model.processing_time_ms = outcome.processing_time_ms
            model.retry_count = outcome.retry_count
            model.last_error = (
                truncate_message(outcome.last_error) if outcome.last_error else None
            )
            model.last_synced_at = now

            await session.commit()
            await session.refresh(model)
            return _model_to_order(model)

    # ── Metadata ────────────────────────────────────────────────────────────

    async def get_meta(self, key: str) -> str | None:
        async for session in self._session_factory():
            model = await session.get(MetaModel, key)
            return model.value if model is not None else None

    async def set_meta(self, key: str, value: str) -> None:
        async for session in self._session_factory():
            model = await session.get(MetaModel, key)
            if model is None:
                session.add(MetaModel(key=key, value=value, updated_at=utcnow()))
            else:
                model.value = value
                model.updated_at = utcnow()
            await session.commit()

    async def _get_meta_int(self, key: str) -> int:
        raw = await self.get_meta(key)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            logger.warning("repository.bad_counter", key=key, value=raw)
            return 0

    async def update_heartbeat(self, at: datetime | None = None) -> None:
        await self.set_meta(HEARTBEAT_KEY, (at or utcnow()).isoformat())

    async def get_heartbeat(self) -> datetime | None:
        return _parse_timestamp(await self.get_meta(HEARTBEAT_KEY))

    async def get_consecutive_failures(self) -> int:
        return await self._get_meta_int(CONSECUTIVE_FAILURES_KEY)

    async def increment_failures(self) -> int:
        """Bump the batch failure streak and return the new value."""
        streak = await self._get_meta_int(CONSECUTIVE_FAILURES_KEY) + 1
        await self.set_meta(CONSECUTIVE_FAILURES_KEY, str(streak))
        return streak

    async def reset_failures(self) -> None:
        await self.set_meta(CONSECUTIVE_FAILURES_KEY, "0")

    async def get_reconcile_watermark(self) -> datetime | None:
        return _parse_timestamp(await self.get_meta(RECONCILE_WATERMARK_KEY))

    async def set_reconcile_watermark(self, watermark: datetime) -> None:
        await self.set_meta(RECONCILE_WATERMARK_KEY, as_utc(watermark).isoformat())

    async def add_to_totals(self, processed: int = 0, failed: int = 0) -> None:
        """Add batch counts to the all-time running totals."""
        if processed:
            total = await self._get_meta_int(TOTAL_PROCESSED_KEY) + processed
            await self.set_meta(TOTAL_PROCESSED_KEY, str(total))
        if failed:
            total = await self._get_meta_int(TOTAL_FAILED_KEY) + failed
            await self.set_meta(TOTAL_FAILED_KEY, str(total))

    async def get_totals(self) -> dict[str, int]:
        return {
            "processed": await self._get_meta_int(TOTAL_PROCESSED_KEY),
            "failed": await self._get_meta_int(TOTAL_FAILED_KEY),
        }

    # ── Error Log ───────────────────────────────────────────────────────────

    async def log_error(self, record: ErrorRecord) -> None:
        """Append an error row and remember it as the latest error.

        Args:
            record: Typed error record; the message is truncated to 500 chars.
        """
        now = utcnow()
        error_type = getattr(record.error_type, "value", record.error_type)
        message = truncate_message(record.message)
        async for session in self._session_factory():
            session.add(
                ErrorLogModel(
                    error_type=error_type,
                    error_message=message,
                    error_details=record.details,
                    order_code=record.order_code,
                    occurred_at=now,
                )
            )
            await session.commit()

        await self.set_meta(LAST_ERROR_AT_KEY, now.isoformat())
        await self.set_meta(LAST_ERROR_MESSAGE_KEY, f"{error_type}: {message}")

    async def get_recent_errors(self, limit: int = 10) -> list[ErrorLogRead]:
        """Newest-first slice of the error log."""
        async for session in self._session_factory():
            stmt = (
                select(ErrorLogModel)
                .order_by(ErrorLogModel.occurred_at.desc(), ErrorLogModel.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_error(m) for m in result.scalars().all()]

    async def get_order_errors(self, order_code: str, limit: int = 10) -> list[ErrorLogRead]:
        async for session in self._session_factory():
            stmt = (
                select(ErrorLogModel)
                .where(ErrorLogModel.order_code == order_code)
                .order_by(ErrorLogModel.occurred_at.desc(), ErrorLogModel.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_error(m) for m in result.scalars().all()]

    # ── Daily Statistics ────────────────────────────────────────────────────

    async def increment_daily_stats(
        self, day: date, increment: StatsIncrement
    ) -> DailyStatsRead:
        """Add counter deltas to ``day``'s row, creating it on first write.

        The average processing time is recomputed over the orders that
        carried a processing time.
        """
        async for session in self._session_factory():
            model = await session.get(DailyStatsModel, day)
            if model is None:
                model = DailyStatsModel(
                    stat_date=day,
                    orders_processed=0,
                    orders_failed=0,
                    contacts_created=0,
                    deals_created=0,
                    total_amount=0,
                    total_processing_time_ms=0,
                    timed_orders=0,
                    avg_processing_time_ms=0,
                    api_errors_upstream=0,
                    api_errors_crm=0,
                    rate_limit_hits=0,
                    reconcile_updates=0,
                )
                session.add(model)

            for field, delta in increment.model_dump().items():
                if delta:
                    setattr(model, field, getattr(model, field) + delta)

            if model.timed_orders > 0:
                model.avg_processing_time_ms = round(
                    model.total_processing_time_ms / model.timed_orders
                )
            model.updated_at = utcnow()

            await session.commit()
            await session.refresh(model)
            return _model_to_stats(model)

    async def get_daily_stats(self, day: date) -> DailyStatsRead | None:
        async for session in self._session_factory():
            model = await session.get(DailyStatsModel, day)
            return _model_to_stats(model) if model is not None else None

    # ── OAuth Tokens ────────────────────────────────────────────────────────

    async def get_tokens(self) -> OAuthTokens | None:
        async for session in self._session_factory():
            model = await session.get(OAuthTokenModel, _TOKEN_ROW_ID)
            if model is None:
                return None
            return OAuthTokens(
                access_token=model.access_token,
                refresh_token=model.refresh_token,
                expires_at=as_utc(model.expires_at),
            )

    async def save_tokens(self, tokens: OAuthTokens) -> None:
        async for session in self._session_factory():
            model = await session.get(OAuthTokenModel, _TOKEN_ROW_ID)
            if model is None:
                model = OAuthTokenModel(id=_TOKEN_ROW_ID)
                session.add(model)
            model.access_token = tokens.access_token
            model.refresh_token = tokens.refresh_token
            model.expires_at = tokens.expires_at
            model.updated_at = utcnow()
            await session.commit()
        logger.info("repository.tokens_saved", expires_at=tokens.expires_at.isoformat())
