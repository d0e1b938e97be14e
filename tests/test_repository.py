"""Integration tests for SyncRepository against SQLite."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.kaspi_amo.sync.repository import (
    ERROR_MESSAGE_MAX_LENGTH,
    LAST_ERROR_MESSAGE_KEY,
    local_date,
    truncate_message,
)
from src.kaspi_amo.sync.schemas import (
    ErrorRecord,
    ErrorType,
    OAuthTokens,
    OrderOutcome,
    StatsIncrement,
)


def _outcome(**overrides) -> OrderOutcome:
    defaults = {
        "order_code": "ORDER-1",
        "crm_deal_id": 9001,
        "upstream_state": "NEW",
        "fingerprint": "a" * 32,
        "processing_time_ms": 120,
        "retry_count": 0,
        "last_error": None,
    }
    defaults.update(overrides)
    return OrderOutcome(**defaults)


class TestHelpers:
    def test_truncate_message(self):
        assert truncate_message("short") == "short"
        long = "x" * 600
        truncated = truncate_message(long)
        assert len(truncated) == ERROR_MESSAGE_MAX_LENGTH
        assert truncated.endswith("...")

    def test_local_date_crosses_midnight(self):
        # 20:00 UTC is already the next day at UTC+5
        at = datetime(2026, 10, 19, 20, 0, tzinfo=timezone.utc)
        assert local_date("Asia/Tashkent", at) == date(2026, 10, 20)
        assert local_date("UTC", at) == date(2026, 10, 19)


class TestProcessedOrders:
    """Test the processed order upsert."""

    async def test_missing_order_returns_none(self, repository):
        assert await repository.get_processed_order("NOPE") is None

    async def test_insert_then_read(self, repository):
        saved = await repository.save_processed_order(_outcome())
        assert saved.crm_deal_id == 9001
        assert saved.last_synced_at is not None
        assert saved.last_synced_at.tzinfo is not None

        loaded = await repository.get_processed_order("ORDER-1")
        assert loaded is not None
        assert loaded.fingerprint == "a" * 32
        assert loaded.processed_successfully is True

    async def test_upsert_keeps_single_row(self, repository):
        await repository.save_processed_order(
            _outcome(crm_deal_id=None, retry_count=1, last_error="CRMAPIError: down")
        )
        first = await repository.get_processed_order("ORDER-1")
        assert first.processed_successfully is False
        assert first.retry_count == 1

        await repository.save_processed_order(_outcome(retry_count=0))
        second = await repository.get_processed_order("ORDER-1")
        assert second.retry_count == 0
        assert second.last_error is None
        assert second.crm_deal_id == 9001
        assert second.updated_at is not None

    async def test_long_error_truncated(self, repository):
        await repository.save_processed_order(_outcome(last_error="e" * 900))
        loaded = await repository.get_processed_order("ORDER-1")
        assert len(loaded.last_error) == ERROR_MESSAGE_MAX_LENGTH

    def test_negative_retry_count_rejected(self):
        with pytest.raises(ValidationError):
            _outcome(retry_count=-1)


class TestMeta:
    """Test heartbeat, failure streak, watermark and totals."""

    async def test_heartbeat_round_trip(self, repository):
        assert await repository.get_heartbeat() is None
        at = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
        await repository.update_heartbeat(at)
        assert await repository.get_heartbeat() == at

    async def test_failure_streak(self, repository):
        assert await repository.get_consecutive_failures() == 0
        assert await repository.increment_failures() == 1
        assert await repository.increment_failures() == 2
        await repository.reset_failures()
        assert await repository.get_consecutive_failures() == 0

    async def test_watermark_stored_as_utc(self, repository):
        almaty = timezone(timedelta(hours=5))
        await repository.set_reconcile_watermark(datetime(2026, 10, 19, 13, 0, tzinfo=almaty))
        watermark = await repository.get_reconcile_watermark()
        assert watermark == datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
        assert watermark.utcoffset() == timedelta(0)

    async def test_totals_accumulate(self, repository):
        await repository.add_to_totals(processed=3, failed=1)
        await repository.add_to_totals(processed=2)
        assert await repository.get_totals() == {"processed": 5, "failed": 1}

    async def test_corrupt_counter_reads_as_zero(self, repository):
        await repository.set_meta("consecutive_failures", "garbage")
        assert await repository.get_consecutive_failures() == 0


class TestErrorLog:
    """Test error log append and queries."""

    async def test_log_error_and_recent(self, repository):
        await repository.log_error(
            ErrorRecord(error_type=ErrorType.ORDER_ERROR, message="first", order_code="A")
        )
        await repository.log_error(
            ErrorRecord(
                error_type=ErrorType.POLL_ERROR,
                message="second",
                details={"fetched": 3},
            )
        )
        recent = await repository.get_recent_errors(limit=5)
        assert [e.error_message for e in recent] == ["second", "first"]
        assert recent[0].error_type == "POLL_ERROR"
        assert recent[0].error_details == {"fetched": 3}
        assert recent[0].occurred_at.tzinfo is not None

    async def test_last_error_meta_updated(self, repository):
        await repository.log_error(ErrorRecord(error_type=ErrorType.POLL_ERROR, message="boom"))
        assert await repository.get_meta(LAST_ERROR_MESSAGE_KEY) == "POLL_ERROR: boom"

    async def test_order_errors_filtered(self, repository):
        for code in ("A", "B", "A"):
            await repository.log_error(
                ErrorRecord(error_type=ErrorType.ORDER_ERROR, message=code, order_code=code)
            )
        errors = await repository.get_order_errors("A")
        assert len(errors) == 2
        assert {e.order_code for e in errors} == {"A"}

    async def test_message_truncated(self, repository):
        await repository.log_error(ErrorRecord(error_type="CUSTOM", message="m" * 1000))
        (entry,) = await repository.get_recent_errors(limit=1)
        assert len(entry.error_message) == ERROR_MESSAGE_MAX_LENGTH


class TestDailyStats:
    """Test per-day counters."""

    async def test_row_created_lazily_and_incremented(self, repository):
        day = date(2026, 10, 19)
        assert await repository.get_daily_stats(day) is None

        await repository.increment_daily_stats(
            day,
            StatsIncrement(
                orders_processed=2, deals_created=2, total_processing_time_ms=300, timed_orders=2
            ),
        )
        stats = await repository.increment_daily_stats(
            day,
            StatsIncrement(
                orders_processed=1, orders_failed=1, total_processing_time_ms=300, timed_orders=1
            ),
        )
        assert stats.stat_date == day
        assert stats.orders_processed == 3
        assert stats.orders_failed == 1
        assert stats.deals_created == 2
        assert stats.avg_processing_time_ms == 200

    async def test_average_ignores_untimed_orders(self, repository):
        """Resumed and dry-run orders count as processed but carry no time."""
        stats = await repository.increment_daily_stats(
            date(2026, 10, 19),
            StatsIncrement(orders_processed=3, total_processing_time_ms=450, timed_orders=1),
        )
        assert stats.orders_processed == 3
        assert stats.timed_orders == 1
        assert stats.avg_processing_time_ms == 450

    async def test_days_are_independent(self, repository):
        await repository.increment_daily_stats(date(2026, 10, 18), StatsIncrement(orders_failed=4))
        await repository.increment_daily_stats(date(2026, 10, 19), StatsIncrement(orders_failed=1))
        assert (await repository.get_daily_stats(date(2026, 10, 18))).orders_failed == 4
        assert (await repository.get_daily_stats(date(2026, 10, 19))).orders_failed == 1

    def test_empty_increment(self):
        assert StatsIncrement().is_empty()
        assert not StatsIncrement(rate_limit_hits=1).is_empty()


class TestTokens:
    async def test_tokens_single_row(self, repository):
        assert await repository.get_tokens() is None
        expires = datetime(2026, 10, 20, tzinfo=timezone.utc)
        await repository.save_tokens(OAuthTokens(access_token="a1", refresh_token="r1", expires_at=expires))
        await repository.save_tokens(OAuthTokens(access_token="a2", refresh_token="r2", expires_at=expires))
        tokens = await repository.get_tokens()
        assert tokens.access_token == "a2"
        assert tokens.refresh_token == "r2"
        assert tokens.expires_at == expires
