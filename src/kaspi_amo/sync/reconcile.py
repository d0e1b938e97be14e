"""Reconciliation pipeline.

Catches what the poll pipeline missed or left inconsistent. One run:

1. Take the ``reconcile`` lock (independent of ``poll``).
2. Read the watermark and subtract RECONCILE_BUFFER_HOURS.
3. Page through every order updated since then, up to RECONCILE_MAX_PAGES.
4. Per order:
   - no deal id on record: create it through OrderProcessor, tagged
     ``reconciled``
   - fingerprint unchanged: nothing to do
   - fingerprint changed: update price, replace line items, append an
     audit note, store the new fingerprint
   A failing order is recorded as RECONCILE_ERROR and the batch goes on.
5. Advance the watermark to the newest observed update (never backwards)
   and persist it before the lock is released. Dry runs leave it alone.

A batch-level exception, a failing lock acquisition included, is logged
as RECONCILE_CRITICAL, raises a critical alert and propagates. An info
alert summarises runs that created or updated anything.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from src.kaspi_amo.alerts.service import AlertService
from src.kaspi_amo.clients.adapter import CRMClient, OrderSource
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.monitoring import record_order, track_batch
from src.kaspi_amo.sync.compose import line_items, update_note
from src.kaspi_amo.sync.fingerprint import compute_fingerprint
from src.kaspi_amo.sync.locks import RECONCILE_LOCK, LockManager
from src.kaspi_amo.sync.paging import fetch_all_pages
from src.kaspi_amo.sync.processor import (
    BatchStats,
    OrderProcessor,
    OrderResult,
    describe_error,
)
from src.kaspi_amo.sync.repository import SyncRepository, as_utc, local_date, utcnow
from src.kaspi_amo.sync.schemas import (
    ErrorRecord,
    ErrorType,
    KaspiOrder,
    OrderAction,
    OrderOutcome,
    OrdersPage,
    ProcessedOrderRead,
    ReconcileSummary,
)

logger = structlog.get_logger(__name__)


def advance_watermark(
    current: datetime, orders: list[KaspiOrder], fetch_started: datetime
) -> datetime:
    """Newest observed update time, or the fetch start for an empty batch.

    Never returns a value older than ``current``.
    """
    if orders:
        candidate = max(as_utc(o.last_modified_at) for o in orders)
    else:
        candidate = fetch_started
    return max(current, candidate)


class ReconcilePipeline:
    """Detect and repair drift between Kaspi orders and CRM deals.

    Args:
        repository: Persistent sync state.
        locks: Lock manager guarding concurrent runs.
        source: Kaspi order feed.
        crm: CRM client used for the update path.
        processor: Shared idempotent create path.
        alerts: Alert service.
        settings: Application settings.
        clock: Returns the current UTC time, injectable for tests.
    """

    def __init__(
        self,
        repository: SyncRepository,
        locks: LockManager,
        source: OrderSource,
        crm: CRMClient,
        processor: OrderProcessor,
        alerts: AlertService,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._locks = locks
        self._source = source
        self._crm = crm
        self._processor = processor
        self._alerts = alerts
        self._settings = settings
        self._clock = clock

    async def run(self) -> ReconcileSummary:
        """Execute one reconciliation run.

        Returns:
            ReconcileSummary; ``lock_acquired`` is False when another run
            holds the lock.

        Raises:
            Exception: Any batch-level failure, after it has been recorded
                and alerted.
        """
        ttl = timedelta(minutes=self._settings.RECONCILE_LOCK_TTL_MINUTES)
        start = time.perf_counter()
        stats = BatchStats()
        summary = ReconcileSummary()
        acquired = False
        try:
            acquired = await self._locks.acquire(RECONCILE_LOCK, ttl)
            if not acquired:
                logger.info("reconcile.skipped_lock_busy")
                return ReconcileSummary(lock_acquired=False)

            async with track_batch("reconcile"):
                fetch_started = self._clock()
                watermark = await self._repository.get_reconcile_watermark()
                if watermark is None:
                    watermark = fetch_started - timedelta(
                        hours=self._settings.RECONCILE_DEFAULT_LOOKBACK_HOURS
                    )
                summary.watermark_before = watermark
                since = watermark - timedelta(hours=self._settings.RECONCILE_BUFFER_HOURS)
                logger.info(
                    "reconcile.started",
                    watermark=watermark.isoformat(),
                    since=since.isoformat(),
                    dry_run=self._settings.DRY_RUN,
                )

                async def fetch_page(page: int) -> OrdersPage:
                    return await self._source.list_orders_updated_after(
                        since, page=page, states=self._settings.allowed_states
                    )

                orders = await fetch_all_pages(
                    fetch_page,
                    page_size=self._settings.KASPI_PAGE_SIZE,
                    max_pages=self._settings.RECONCILE_MAX_PAGES,
                )
                stats.fetched = len(orders)

                for order in orders:
                    result = await self._reconcile_order(order)
                    stats.add(result)
                    record_order("reconcile", result.action.value)
                    summary.checked += 1
                    if result.action in (OrderAction.CREATED, OrderAction.DRY_RUN):
                        summary.created += 1
                    elif result.action == OrderAction.UPDATED:
                        summary.updated += 1
                    elif result.action == OrderAction.FAILED:
                        summary.failed += 1
                    else:
                        summary.unchanged += 1

                new_watermark = advance_watermark(watermark, orders, fetch_started)
                summary.watermark_after = new_watermark

                if not self._settings.DRY_RUN:
                    await self._repository.set_reconcile_watermark(new_watermark)
                    increment = stats.to_increment(
                        reconcile_updates=summary.created + summary.updated
                    )
                    if not increment.is_empty():
                        await self._repository.increment_daily_stats(
                            local_date(self._settings.TIMEZONE), increment
                        )
                    await self._repository.add_to_totals(
                        processed=summary.created + summary.updated, failed=summary.failed
                    )
        except Exception as exc:
            await self._record_failure(exc, summary)
            raise
        finally:
            if acquired:
                await self._release()

        summary.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info("reconcile.completed", **summary.model_dump(mode="json"))

        if summary.created or summary.updated:
            await self._alerts.send_info(
                "Reconciliation results",
                f"Created: {summary.created}, updated: {summary.updated}",
                summary.model_dump(mode="json"),
            )
        return summary

    # ── Per-Order ───────────────────────────────────────────────────────────

    async def _reconcile_order(self, order: KaspiOrder) -> OrderResult:
        try:
            previous = await self._repository.get_processed_order(order.code)
            if previous is None or previous.crm_deal_id is None:
                logger.info("reconcile.order_missing_deal", order_code=order.code)
                return await self._processor.create(
                    order,
                    previous,
                    reconciled=True,
                    error_type=ErrorType.RECONCILE_ERROR,
                )

            fingerprint = compute_fingerprint(order)
            if fingerprint == previous.fingerprint:
                logger.debug("reconcile.order_unchanged", order_code=order.code)
                return OrderResult(
                    order_code=order.code,
                    action=OrderAction.UNCHANGED,
                    deal_id=previous.crm_deal_id,
                )
            return await self._repair(order, previous, fingerprint)
        except Exception as exc:
            logger.error("reconcile.order_failed", order_code=order.code, exc_info=True)
            await self._log_order_error(order, None, exc)
            return OrderResult(order_code=order.code, action=OrderAction.FAILED, error=exc)

    async def _repair(
        self, order: KaspiOrder, previous: ProcessedOrderRead, fingerprint: str
    ) -> OrderResult:
        """Push a changed order onto its existing deal.

        On failure the previous fingerprint is kept so the next run sees
        the drift again.
        """
        deal_id = previous.crm_deal_id
        start = time.perf_counter()
        logger.info(
            "reconcile.order_changed",
            order_code=order.code,
            deal_id=deal_id,
            old_fingerprint=previous.fingerprint,
            new_fingerprint=fingerprint,
        )

        if self._settings.DRY_RUN:
            logger.info(
                "reconcile.dry_run_update",
                order_code=order.code,
                deal_id=deal_id,
                total_price=order.total_price,
            )
            return OrderResult(
                order_code=order.code,
                action=OrderAction.UPDATED,
                deal_id=deal_id,
                amount=order.total_price,
            )

        try:
            await self._crm.update_deal(deal_id, round(order.total_price))

            if order.items:
                await self._replace_line_items(deal_id, order)

            await self._crm.add_note(
                deal_id, update_note(order, self._settings.TIMEZONE, self._clock())
            )

            elapsed = int((time.perf_counter() - start) * 1000)
            await self._repository.save_processed_order(
                OrderOutcome(
                    order_code=order.code,
                    crm_deal_id=deal_id,
                    upstream_state=order.state,
                    fingerprint=fingerprint,
                    processing_time_ms=elapsed,
                    retry_count=0,
                    last_error=None,
                )
            )
        except Exception as exc:
            message = describe_error(exc)
            logger.error("reconcile.update_failed", order_code=order.code, deal_id=deal_id, error=message)
            await self._repository.save_processed_order(
                OrderOutcome(
                    order_code=order.code,
                    crm_deal_id=deal_id,
                    upstream_state=previous.upstream_state,
                    fingerprint=previous.fingerprint,
                    processing_time_ms=int((time.perf_counter() - start) * 1000),
                    retry_count=previous.retry_count + 1,
                    last_error=message,
                )
            )
            await self._log_order_error(order, previous, exc)
            return OrderResult(
                order_code=order.code, action=OrderAction.FAILED, deal_id=deal_id, error=exc
            )

        logger.info("reconcile.order_updated", order_code=order.code, deal_id=deal_id)
        return OrderResult(
            order_code=order.code,
            action=OrderAction.UPDATED,
            deal_id=deal_id,
            processing_time_ms=elapsed,
            amount=order.total_price,
        )

    async def _replace_line_items(self, deal_id: int, order: KaspiOrder) -> None:
        """Unlink every item currently on the deal, then link the new set."""
        catalog_id = self._settings.AMO_CATALOG_ID
        current = await self._crm.get_deal(deal_id)
        linked = [
            item.model_copy(update={"catalog_id": item.catalog_id or catalog_id})
            for item in current.items
            if item.id is not None
        ]
        if linked:
            await self._crm.unlink_line_items(deal_id, linked)
        await self._crm.link_line_items(deal_id, line_items(order, catalog_id))

    async def _log_order_error(
        self,
        order: KaspiOrder,
        previous: ProcessedOrderRead | None,
        exc: Exception,
    ) -> None:
        await self._repository.log_error(
            ErrorRecord(
                error_type=ErrorType.RECONCILE_ERROR,
                message=describe_error(exc),
                order_code=order.code,
                details={
                    "state": order.state,
                    "previous": previous.model_dump(mode="json") if previous else None,
                },
            )
        )

    # ── Batch ───────────────────────────────────────────────────────────────

    async def _record_failure(self, exc: Exception, summary: ReconcileSummary) -> None:
        message = describe_error(exc)
        logger.error("reconcile.failed", error=message, exc_info=True)
        details = summary.model_dump(mode="json")
        try:
            await self._repository.log_error(
                ErrorRecord(
                    error_type=ErrorType.RECONCILE_CRITICAL,
                    message=message,
                    details=details,
                )
            )
        except Exception:
            logger.error("reconcile.failure_bookkeeping_failed", exc_info=True)
        await self._alerts.send_critical("Reconciliation failed", message, details)

    async def _release(self) -> None:
        try:
            await self._locks.release(RECONCILE_LOCK)
        except Exception:
            # Expiry frees the lock after the TTL
            logger.error("reconcile.lock_release_failed", exc_info=True)
