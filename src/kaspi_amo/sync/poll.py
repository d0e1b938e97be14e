"""Poll-and-create pipeline.

One run: take the ``poll`` lock, fetch the newest orders in the allowed
states, hand each to OrderProcessor strictly in fetch order, then record
daily statistics, running totals, the heartbeat and the failure-streak
reset. The lock is released on every exit path. A run that cannot take
the lock is a clean no-op.

A batch-level exception, a failing lock acquisition included, bumps the
consecutive-failure streak, is written to the error log as POLL_ERROR and
raises a critical alert once the streak reaches ALERT_FAIL_STREAK, then
propagates to the caller.
"""

from __future__ import annotations

import time
from datetime import timedelta

import structlog

from src.kaspi_amo.alerts.service import AlertService
from src.kaspi_amo.clients.adapter import OrderSource
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.monitoring import record_order, track_batch
from src.kaspi_amo.sync.locks import POLL_LOCK, LockManager
from src.kaspi_amo.sync.paging import fetch_all_pages
from src.kaspi_amo.sync.processor import BatchStats, OrderProcessor, describe_error
from src.kaspi_amo.sync.repository import SyncRepository, local_date
from src.kaspi_amo.sync.schemas import ErrorRecord, ErrorType, PollSummary

logger = structlog.get_logger(__name__)


class PollPipeline:
    """Fetch active orders and create the missing CRM deals.

    Args:
        repository: Persistent sync state.
        locks: Lock manager guarding concurrent runs.
        source: Kaspi order feed.
        processor: Shared idempotent create path.
        alerts: Alert service.
        settings: Application settings.
    """

    def __init__(
        self,
        repository: SyncRepository,
        locks: LockManager,
        source: OrderSource,
        processor: OrderProcessor,
        alerts: AlertService,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._locks = locks
        self._source = source
        self._processor = processor
        self._alerts = alerts
        self._settings = settings

    async def run(self) -> PollSummary:
        """Execute one poll run.

        Returns:
            PollSummary; ``lock_acquired`` is False when another run holds
            the lock.

        Raises:
            Exception: Any batch-level failure, after it has been recorded.
        """
        ttl = timedelta(minutes=self._settings.POLL_LOCK_TTL_MINUTES)
        start = time.perf_counter()
        stats = BatchStats()
        acquired = False
        try:
            acquired = await self._locks.acquire(POLL_LOCK, ttl)
            if not acquired:
                logger.info("poll.skipped_lock_busy")
                return PollSummary(lock_acquired=False)

            logger.info(
                "poll.started",
                dry_run=self._settings.DRY_RUN,
                states=self._settings.allowed_states,
            )
            async with track_batch("poll"):
                orders = await fetch_all_pages(
                    self._fetch_page,
                    page_size=self._settings.KASPI_PAGE_SIZE,
                    max_pages=self._settings.POLL_MAX_PAGES,
                )
                stats.fetched = len(orders)

                for order in orders:
                    result = await self._processor.process(order)
                    stats.add(result)
                    record_order("poll", result.action.value)

                await self._record_success(stats)
        except Exception as exc:
            await self._record_failure(exc, stats)
            raise
        finally:
            if acquired:
                await self._release()

        summary = PollSummary(
            fetched=stats.fetched,
            processed=stats.processed,
            failed=stats.failed,
            skipped=stats.skipped,
            total_amount=stats.total_amount,
            avg_processing_time_ms=stats.avg_processing_time_ms,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info("poll.completed", **summary.model_dump())

        if summary.backlog >= self._settings.ALERT_BACKLOG_THRESHOLD:
            await self._alerts.send_warning(
                "Order backlog",
                f"{summary.backlog} orders were not processed in this run",
                {"backlog": summary.backlog, "threshold": self._settings.ALERT_BACKLOG_THRESHOLD},
            )
        return summary

    async def _fetch_page(self, page: int):
        return await self._source.list_orders(
            self._settings.allowed_states,
            page=page,
            page_size=self._settings.KASPI_PAGE_SIZE,
            sort="createdAt:desc",
        )

    async def _record_success(self, stats: BatchStats) -> None:
        if not self._settings.DRY_RUN:
            increment = stats.to_increment()
            if not increment.is_empty():
                await self._repository.increment_daily_stats(
                    local_date(self._settings.TIMEZONE), increment
                )
            await self._repository.add_to_totals(processed=stats.processed, failed=stats.failed)
        await self._repository.reset_failures()
        await self._repository.update_heartbeat()

    async def _record_failure(self, exc: Exception, stats: BatchStats) -> None:
        """Failure bookkeeping; never masks the original exception."""
        message = describe_error(exc)
        logger.error("poll.failed", error=message, exc_info=True)
        try:
            streak = await self._repository.increment_failures()
            await self._repository.log_error(
                ErrorRecord(
                    error_type=ErrorType.POLL_ERROR,
                    message=message,
                    details={
                        "fetched": stats.fetched,
                        "processed": stats.processed,
                        "failed": stats.failed,
                        "consecutive_failures": streak,
                    },
                )
            )
        except Exception:
            logger.error("poll.failure_bookkeeping_failed", exc_info=True)
            return

        if streak >= self._settings.ALERT_FAIL_STREAK:
            await self._alerts.send_critical(
                "Poll failing",
                message,
                {"consecutive_failures": streak},
            )

    async def _release(self) -> None:
        try:
            await self._locks.release(POLL_LOCK)
        except Exception:
            # Expiry frees the lock after the TTL
            logger.error("poll.lock_release_failed", exc_info=True)
