"""Tests for OrderProcessor and BatchStats.

The CRM is an AsyncMock; persistence is a real SQLite-backed repository
so retry counters and deal ids are checked end to end.
"""

from __future__ import annotations

import pytest

from src.kaspi_amo.errors import CRMAPIError, OrderValidationError, UpstreamAPIError
from src.kaspi_amo.sync.fingerprint import compute_fingerprint
from src.kaspi_amo.sync.processor import BatchStats, OrderProcessor, OrderResult, describe_error
from src.kaspi_amo.sync.schemas import (
    Contact,
    ErrorType,
    KaspiBuyer,
    OrderAction,
    OrderOutcome,
)


@pytest.fixture
def processor(repository, crm, settings) -> OrderProcessor:
    return OrderProcessor(repository, crm, settings)


class TestCreate:
    """Test the happy path of deal creation."""

    async def test_creates_contact_and_deal(self, processor, repository, crm, make_order):
        order = make_order()
        result = await processor.process(order)

        assert result.action == OrderAction.CREATED
        assert result.deal_id == 9001
        assert result.contact_created is True
        crm.find_contact_by_phone.assert_awaited_once_with("+77771234567")
        crm.create_contact.assert_awaited_once_with("Nurlanova Aigerim", "+77771234567")

        deal = crm.create_deal_complex.await_args.args[0]
        assert deal.name == "Kaspi #ORDER-1 - Nurlanova Aigerim"
        assert deal.price == 1000
        assert deal.contact_id == 501
        assert deal.tags == ["kaspi", "new"]
        assert deal.items[0].catalog_id == 1001
        assert "Phone case x 2" in deal.note

        record = await repository.get_processed_order("ORDER-1")
        assert record.crm_deal_id == 9001
        assert record.retry_count == 0
        assert record.last_error is None
        assert record.fingerprint == compute_fingerprint(order)

    async def test_reuses_existing_contact(self, processor, crm, make_order):
        crm.find_contact_by_phone.return_value = Contact(id=42, name="Known")
        result = await processor.process(make_order())

        assert result.contact_created is False
        crm.create_contact.assert_not_awaited()
        assert crm.create_deal_complex.await_args.args[0].contact_id == 42

    async def test_reconciled_tag(self, processor, crm, make_order):
        await processor.create(make_order(), None, reconciled=True)
        assert "reconciled" in crm.create_deal_complex.await_args.args[0].tags


class TestIdempotency:
    """Test that an order produces at most one deal."""

    async def test_second_run_is_skipped(self, processor, crm, make_order):
        order = make_order()
        await processor.process(order)
        crm.reset_mock()

        result = await processor.process(order)

        assert result.action == OrderAction.SKIPPED
        assert result.deal_id == 9001
        assert crm.mock_calls == []

    async def test_failure_then_success_resets_retry_count(
        self, processor, repository, crm, make_order
    ):
        crm.create_deal_complex.side_effect = CRMAPIError("amoCRM create_deal failed with HTTP 500", 500)
        first = await processor.process(make_order())
        assert first.action == OrderAction.FAILED

        record = await repository.get_processed_order("ORDER-1")
        assert record.crm_deal_id is None
        assert record.retry_count == 1
        assert record.last_error.startswith("CRMAPIError")

        crm.create_deal_complex.side_effect = CRMAPIError("still down", 503)
        await processor.process(make_order())
        assert (await repository.get_processed_order("ORDER-1")).retry_count == 2

        crm.create_deal_complex.side_effect = None
        third = await processor.process(make_order())
        assert third.action == OrderAction.CREATED
        record = await repository.get_processed_order("ORDER-1")
        assert record.retry_count == 0
        assert record.last_error is None
        assert record.crm_deal_id == 9001

    async def test_existing_deal_is_resumed_not_recreated(
        self, processor, repository, crm, make_order
    ):
        """A failed record that already carries a deal id never creates another deal."""
        await repository.save_processed_order(
            OrderOutcome(
                order_code="ORDER-1",
                crm_deal_id=7000,
                upstream_state="NEW",
                fingerprint="f" * 32,
                retry_count=2,
                last_error="CRMAPIError: note failed",
            )
        )

        result = await processor.process(make_order(state="DELIVERY"))

        assert result.action == OrderAction.RESUMED
        assert result.deal_id == 7000
        crm.create_deal_complex.assert_not_awaited()
        crm.create_contact.assert_not_awaited()
        record = await repository.get_processed_order("ORDER-1")
        assert record.crm_deal_id == 7000
        assert record.retry_count == 0
        assert record.last_error is None
        # Kept so reconciliation still sees the content change
        assert record.fingerprint == "f" * 32
        assert record.upstream_state == "NEW"


class TestFailures:
    """Test per-order failure recording."""

    async def test_unusable_phone_recorded_without_raising(
        self, processor, repository, crm, make_order
    ):
        order = make_order(buyer=KaspiBuyer(first_name="Aigerim", phone="12345"))
        result = await processor.process(order)

        assert result.action == OrderAction.FAILED
        assert isinstance(result.error, OrderValidationError)
        crm.find_contact_by_phone.assert_not_awaited()

        record = await repository.get_processed_order("ORDER-1")
        assert record.last_error is not None
        assert record.crm_deal_id is None

        (entry,) = await repository.get_order_errors("ORDER-1")
        assert entry.error_type == ErrorType.ORDER_ERROR.value
        assert entry.error_details["buyer_phone"] == "***"

    async def test_custom_error_type(self, processor, repository, crm, make_order):
        crm.create_contact.side_effect = CRMAPIError("boom", 400)
        await processor.create(make_order(), None, error_type=ErrorType.RECONCILE_ERROR)
        (entry,) = await repository.get_order_errors("ORDER-1")
        assert entry.error_type == "RECONCILE_ERROR"

    async def test_unexpected_exception_is_recorded(self, processor, repository, crm, make_order):
        crm.find_contact_by_phone.side_effect = RuntimeError("bug")
        result = await processor.process(make_order())
        assert result.action == OrderAction.FAILED
        record = await repository.get_processed_order("ORDER-1")
        assert record.last_error == "RuntimeError: bug"


class TestDryRun:
    """Test that dry run performs no CRM writes and persists nothing."""

    async def test_dry_run_create(self, repository, crm, settings, make_order):
        processor = OrderProcessor(repository, crm, settings.model_copy(update={"DRY_RUN": True}))
        result = await processor.process(make_order())

        assert result.action == OrderAction.DRY_RUN
        crm.find_contact_by_phone.assert_not_awaited()
        crm.create_contact.assert_not_awaited()
        crm.create_deal_complex.assert_not_awaited()
        assert await repository.get_processed_order("ORDER-1") is None

    async def test_dry_run_failure_not_persisted(self, repository, crm, settings, make_order):
        processor = OrderProcessor(repository, crm, settings.model_copy(update={"DRY_RUN": True}))
        result = await processor.process(make_order(buyer=None))
        assert result.action == OrderAction.FAILED
        assert await repository.get_processed_order("ORDER-1") is None
        assert await repository.get_recent_errors() == []


class TestBatchStats:
    """Test result aggregation into daily counters."""

    def test_counts_by_action(self):
        stats = BatchStats(fetched=5)
        stats.add(
            OrderResult("A", OrderAction.CREATED, contact_created=True, processing_time_ms=100, amount=1000)
        )
        stats.add(OrderResult("B", OrderAction.RESUMED, amount=500))
        stats.add(OrderResult("C", OrderAction.SKIPPED))
        stats.add(OrderResult("D", OrderAction.FAILED, error=CRMAPIError("limit", 429)))
        stats.add(OrderResult("E", OrderAction.FAILED, error=UpstreamAPIError("down", 503)))

        assert stats.processed == 2
        assert stats.skipped == 1
        assert stats.failed == 2
        assert stats.deals_created == 1
        assert stats.contacts_created == 1
        assert stats.total_amount == 1500
        assert stats.avg_processing_time_ms == 100

        increment = stats.to_increment(reconcile_updates=4)
        assert increment.api_errors_crm == 1
        assert increment.api_errors_upstream == 1
        assert increment.rate_limit_hits == 1
        assert increment.reconcile_updates == 4
        assert increment.timed_orders == 1

    def test_updates_only_count_as_repairs(self):
        """A repaired deal was counted when created; only the repair is tallied."""
        stats = BatchStats(fetched=2)
        stats.add(OrderResult("A", OrderAction.UPDATED, processing_time_ms=80, amount=1200))
        stats.add(OrderResult("B", OrderAction.CREATED, processing_time_ms=100, amount=500))

        assert stats.updated == 1
        assert stats.processed == 1
        assert stats.total_amount == 500
        assert stats.deals_created == 1
        assert stats.avg_processing_time_ms == 100

    def test_describe_error(self):
        assert describe_error(ValueError("bad")) == "ValueError: bad"
        assert describe_error(KeyError()) == "KeyError: KeyError"
