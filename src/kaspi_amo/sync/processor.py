"""Idempotent creation of CRM entities for one Kaspi order.

OrderProcessor holds the create path shared by both pipelines:

    look up record -> skip if already successful -> resume if a deal id
    exists -> validate phone -> find-or-create contact -> create deal with
    items and note -> persist outcome

Every attempt, success or failure, ends in exactly one upsert of the
order's record. A failure record keeps the previous deal id (if any) and
carries ``retry_count + 1``, so the next run retries it and never creates
a second deal once an id has been recorded.

BatchStats accumulates per-order results into one daily-stats increment.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

import structlog

from src.kaspi_amo.clients.adapter import CRMClient
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.logging import mask_phone
from src.kaspi_amo.core.monitoring import record_api_error
from src.kaspi_amo.errors import (
    CRMAPIError,
    ExternalAPIError,
    OrderValidationError,
    UpstreamAPIError,
)
from src.kaspi_amo.sync.compose import (
    creation_note,
    deal_name,
    deal_tags,
    line_items,
)
from src.kaspi_amo.sync.fingerprint import compute_fingerprint
from src.kaspi_amo.sync.phone import contact_name, extract_buyer_phone
from src.kaspi_amo.sync.repository import SyncRepository
from src.kaspi_amo.sync.schemas import (
    DealCreate,
    ErrorRecord,
    ErrorType,
    KaspiOrder,
    OrderAction,
    OrderOutcome,
    ProcessedOrderRead,
    StatsIncrement,
)

logger = structlog.get_logger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def describe_error(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"


# ── Results ─────────────────────────────────────────────────────────────────


@dataclass
class OrderResult:
    """What happened to one order in one run."""

    order_code: str
    action: OrderAction
    deal_id: int | None = None
    contact_created: bool = False
    processing_time_ms: int = 0
    amount: float = 0
    error: BaseException | None = None


@dataclass
class BatchStats:
    """Running counters for one pipeline run."""

    fetched: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    deals_created: int = 0
    contacts_created: int = 0
    total_amount: float = 0
    total_processing_time_ms: int = 0
    timed_orders: int = 0
    upstream_errors: int = 0
    crm_errors: int = 0
    rate_limit_hits: int = 0
    updated: int = 0

    def add(self, result: OrderResult) -> None:
        if result.action in (OrderAction.SKIPPED, OrderAction.UNCHANGED):
            self.skipped += 1
            return
        if result.action == OrderAction.UPDATED:
            # the deal was already counted when it was created
            self.updated += 1
            return
        if result.action == OrderAction.FAILED:
            self.failed += 1
            self._classify(result.error)
            return

        self.processed += 1
        self.total_amount += result.amount
        if result.action == OrderAction.CREATED:
            self.deals_created += 1
        if result.contact_created:
            self.contacts_created += 1
        if result.processing_time_ms:
            self.total_processing_time_ms += result.processing_time_ms
            self.timed_orders += 1

    def _classify(self, error: BaseException | None) -> None:
        if isinstance(error, UpstreamAPIError):
            self.upstream_errors += 1
        elif isinstance(error, CRMAPIError):
            self.crm_errors += 1
        if isinstance(error, ExternalAPIError):
            if error.is_rate_limited:
                self.rate_limit_hits += 1
            record_api_error(error.service, error.is_rate_limited)

    @property
    def avg_processing_time_ms(self) -> int:
        if not self.timed_orders:
            return 0
        return round(self.total_processing_time_ms / self.timed_orders)

    def to_increment(self, reconcile_updates: int = 0) -> StatsIncrement:
        return StatsIncrement(
            orders_processed=self.processed,
            orders_failed=self.failed,
            contacts_created=self.contacts_created,
            deals_created=self.deals_created,
            total_amount=self.total_amount,
            total_processing_time_ms=self.total_processing_time_ms,
            timed_orders=self.timed_orders,
            api_errors_upstream=self.upstream_errors,
            api_errors_crm=self.crm_errors,
            rate_limit_hits=self.rate_limit_hits,
            reconcile_updates=reconcile_updates,
        )


# ── Processor ───────────────────────────────────────────────────────────────


class OrderProcessor:
    """Creates CRM contact and deal for an order at most once.

    Args:
        repository: Persistent sync state.
        crm: CRM client.
        settings: Application settings (dry run, note template, phone
            region, catalog id).
    """

    def __init__(
        self,
        repository: SyncRepository,
        crm: CRMClient,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._crm = crm
        self._settings = settings

    async def process(self, order: KaspiOrder) -> OrderResult:
        """Poll entry point: skip orders that already succeeded, else create."""
        previous = await self._repository.get_processed_order(order.code)
        if previous is not None and previous.processed_successfully:
            logger.debug("processor.order_skipped", order_code=order.code, deal_id=previous.crm_deal_id)
            return OrderResult(order_code=order.code, action=OrderAction.SKIPPED, deal_id=previous.crm_deal_id)

        if previous is not None:
            logger.info(
                "processor.order_retry",
                order_code=order.code,
                retry_count=previous.retry_count,
                last_error=previous.last_error,
            )
        return await self.create(order, previous)

    async def create(
        self,
        order: KaspiOrder,
        previous: ProcessedOrderRead | None,
        *,
        reconciled: bool = False,
        error_type: ErrorType = ErrorType.ORDER_ERROR,
    ) -> OrderResult:
        """Create contact and deal for ``order`` and persist the outcome.

        Args:
            order: Upstream order.
            previous: Existing record, if the order was attempted before.
            reconciled: Tag the deal as created by reconciliation.
            error_type: Error log tag used when the attempt fails.

        Returns:
            OrderResult; failures are recorded and returned, not raised.
        """
        start = time.perf_counter()
        fingerprint = compute_fingerprint(order)
        deal_id: int | None = None
        region = self._settings.PHONE_DEFAULT_REGION

        try:
            if previous is not None and previous.crm_deal_id is not None:
                return await self._resume(order, previous, start)

            phone = extract_buyer_phone(order.buyer, region)
            if phone is None:
                raise OrderValidationError("No usable buyer phone number", order_code=order.code)
            name = contact_name(order.buyer, region)

            if self._settings.DRY_RUN:
                logger.info(
                    "processor.dry_run_create",
                    order_code=order.code,
                    contact=name,
                    phone=phone,
                    total_price=order.total_price,
                    items=len(order.items),
                )
                return OrderResult(
                    order_code=order.code, action=OrderAction.DRY_RUN, amount=order.total_price
                )

            contact_created = False
            contact = await self._crm.find_contact_by_phone(phone)
            if contact is None:
                logger.info("processor.contact_missing", order_code=order.code, phone=phone)
                contact = await self._crm.create_contact(name, phone)
                contact_created = True

            deal = await self._crm.create_deal_complex(
                DealCreate(
                    name=deal_name(order, name),
                    price=round(order.total_price),
                    contact_id=contact.id,
                    items=line_items(order, self._settings.AMO_CATALOG_ID),
                    note=creation_note(order, self._settings.NOTE_TEMPLATE),
                    tags=deal_tags(order, reconciled=reconciled),
                )
            )
            deal_id = deal.id

            elapsed = _elapsed_ms(start)
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
            logger.info(
                "processor.order_created",
                order_code=order.code,
                deal_id=deal_id,
                contact_id=contact.id,
                reconciled=reconciled,
                processing_time_ms=elapsed,
            )
            return OrderResult(
                order_code=order.code,
                action=OrderAction.CREATED,
                deal_id=deal_id,
                contact_created=contact_created,
                processing_time_ms=elapsed,
                amount=order.total_price,
            )

        except Exception as exc:
            return await self._record_failure(
                order, previous, exc, fingerprint, deal_id, start, error_type
            )

    async def _resume(
        self, order: KaspiOrder, previous: ProcessedOrderRead, start: float
    ) -> OrderResult:
        """Clear the error on a record whose deal already exists.

        The stored fingerprint is kept so reconciliation still sees any
        content change made since the deal was created.
        """
        if self._settings.DRY_RUN:
            logger.info("processor.dry_run_resume", order_code=order.code, deal_id=previous.crm_deal_id)
            return OrderResult(
                order_code=order.code, action=OrderAction.DRY_RUN, deal_id=previous.crm_deal_id
            )

        elapsed = _elapsed_ms(start)
        await self._repository.save_processed_order(
            OrderOutcome(
                order_code=order.code,
                crm_deal_id=previous.crm_deal_id,
                upstream_state=previous.upstream_state,
                fingerprint=previous.fingerprint,
                processing_time_ms=elapsed,
                retry_count=0,
                last_error=None,
            )
        )
        logger.info("processor.order_resumed", order_code=order.code, deal_id=previous.crm_deal_id)
        return OrderResult(
            order_code=order.code,
            action=OrderAction.RESUMED,
            deal_id=previous.crm_deal_id,
            amount=order.total_price,
        )

    async def _record_failure(
        self,
        order: KaspiOrder,
        previous: ProcessedOrderRead | None,
        exc: Exception,
        fingerprint: str,
        deal_id: int | None,
        start: float,
        error_type: ErrorType,
    ) -> OrderResult:
        elapsed = _elapsed_ms(start)
        message = describe_error(exc)
        expected = isinstance(exc, (OrderValidationError, ExternalAPIError))
        logger.error(
            "processor.order_failed",
            order_code=order.code,
            error=message,
            processing_time_ms=elapsed,
            exc_info=not expected,
        )
        if previous is not None and previous.crm_deal_id is not None and deal_id is None:
            deal_id = previous.crm_deal_id
            fingerprint = previous.fingerprint

        if not self._settings.DRY_RUN:
            await self._repository.save_processed_order(
                OrderOutcome(
                    order_code=order.code,
                    crm_deal_id=deal_id,
                    upstream_state=order.state,
                    fingerprint=fingerprint,
                    processing_time_ms=elapsed,
                    retry_count=(previous.retry_count if previous else 0) + 1,
                    last_error=message,
                )
            )
            await self._repository.log_error(
                ErrorRecord(
                    error_type=error_type,
                    message=message,
                    order_code=order.code,
                    details={
                        "state": order.state,
                        "deal_id": deal_id,
                        "retry_count": (previous.retry_count if previous else 0) + 1,
                        "buyer_phone": mask_phone(order.buyer.phone) if order.buyer else None,
                    },
                )
            )

        return OrderResult(
            order_code=order.code,
            action=OrderAction.FAILED,
            deal_id=deal_id,
            processing_time_ms=elapsed,
            error=exc,
        )
