"""Pydantic schemas for order synchronization.

Defines all structured types flowing through the pipelines:
- Enums: ErrorType, OrderAction, HealthState
- Kaspi payloads: KaspiBuyer, KaspiItem, KaspiDelivery, KaspiPickup, KaspiOrder,
  PageMeta, OrdersPage
- amoCRM payloads: Contact, LineItem, Deal, DealCreate
- Persisted state: ProcessedOrderRead, OrderOutcome, ErrorRecord, OAuthTokens, ErrorLogRead,
  StatsIncrement, DailyStatsRead
- Run summaries: PollSummary, ReconcileSummary, HealthStatus
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class ErrorType(str, Enum):
    """Type tags written to the error log."""

    ORDER_ERROR = "ORDER_ERROR"
    POLL_ERROR = "POLL_ERROR"
    RECONCILE_ERROR = "RECONCILE_ERROR"
    RECONCILE_CRITICAL = "RECONCILE_CRITICAL"
    CRITICAL_ALERT = "CRITICAL_ALERT"
    WARNING_ALERT = "WARNING_ALERT"
    INFO_ALERT = "INFO_ALERT"


class OrderAction(str, Enum):
    """Outcome of handling one order in a pipeline run."""

    CREATED = "created"
    RESUMED = "resumed"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"
    DRY_RUN = "dry_run"


class HealthState(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


# ── Kaspi Payloads ──────────────────────────────────────────────────────────


class _KaspiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class KaspiBuyer(_KaspiModel):
    """Buyer block; Kaspi spreads the phone across several optional fields."""

    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    middle_name: str | None = Field(default=None, alias="middleName")
    phone: str | None = None
    mobile_phone: str | None = Field(default=None, alias="mobilePhone")
    cell_phone: str | None = Field(default=None, alias="cellPhone")
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    contact_phone: str | None = Field(default=None, alias="contactPhone")
    email: str | None = None

    def phone_candidates(self) -> list[str]:
        """Phone fields in lookup priority order, empty values dropped."""
        candidates = [
            self.phone,
            self.mobile_phone,
            self.cell_phone,
            self.phone_number,
            self.contact_phone,
        ]
        return [c for c in candidates if c]


class KaspiItem(_KaspiModel):
    sku: str
    name: str = ""
    quantity: int = 1
    price: float = 0
    amount: float | None = None


class KaspiDelivery(_KaspiModel):
    address: str | None = None
    city: str | None = None
    region: str | None = None


class KaspiPickup(_KaspiModel):
    address: str | None = None
    point_name: str | None = Field(default=None, alias="pointName")


class KaspiOrder(_KaspiModel):
    """One upstream order as returned by the Kaspi order API."""

    id: str | None = None
    code: str
    total_price: float = Field(alias="totalPrice")
    state: str
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    buyer: KaspiBuyer | None = None
    items: list[KaspiItem] = Field(default_factory=list)
    delivery: KaspiDelivery | None = None
    pickup: KaspiPickup | None = None

    @property
    def last_modified_at(self) -> datetime:
        """updatedAt when present, createdAt otherwise."""
        return self.updated_at or self.created_at


class PageMeta(_KaspiModel):
    page: int | None = None
    page_size: int | None = Field(default=None, alias="pageSize")
    total_count: int | None = Field(default=None, alias="totalCount")
    total_pages: int | None = Field(default=None, alias="totalPages")


class OrdersPage(_KaspiModel):
    """One page of the order listing."""

    items: list[KaspiOrder] = Field(default_factory=list, alias="data")
    meta: PageMeta | None = None


# ── amoCRM Payloads ─────────────────────────────────────────────────────────


class Contact(BaseModel):
    id: int
    name: str | None = None


class LineItem(BaseModel):
    """Catalog element linked to a deal.

    ``id`` and ``catalog_id`` are only known for items that already exist
    on the CRM side; new free-position items carry name/quantity/price.
    """

    id: int | None = None
    catalog_id: int | None = None
    name: str
    quantity: int = 1
    price: int = 0


class Deal(BaseModel):
    id: int
    name: str | None = None
    price: int | None = None
    items: list[LineItem] = Field(default_factory=list)


class DealCreate(BaseModel):
    """Everything needed for one compound deal creation call."""

    name: str
    price: int
    contact_id: int
    items: list[LineItem] = Field(default_factory=list)
    note: str | None = None
    tags: list[str] = Field(default_factory=list)


# ── Persisted State ─────────────────────────────────────────────────────────


class ProcessedOrderRead(BaseModel):
    """Persisted sync state for one upstream order."""

    order_code: str
    crm_deal_id: int | None = None
    upstream_state: str
    fingerprint: str
    processing_time_ms: int = 0
    retry_count: int = 0
    last_error: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def processed_successfully(self) -> bool:
        return self.crm_deal_id is not None and not self.last_error


class OrderOutcome(BaseModel):
    """Result of one processing attempt, written as an upsert."""

    order_code: str
    crm_deal_id: int | None = None
    upstream_state: str
    fingerprint: str
    processing_time_ms: int = 0
    retry_count: int = Field(default=0, ge=0)
    last_error: str | None = None


class ErrorRecord(BaseModel):
    """The single shape accepted by the error log."""

    error_type: ErrorType | str
    message: str
    details: dict[str, Any] | None = None
    order_code: str | None = None


class OAuthTokens(BaseModel):
    """amoCRM token pair with its absolute expiry."""

    access_token: str
    refresh_token: str
    expires_at: datetime


class ErrorLogRead(BaseModel):
    id: int
    error_type: str
    error_message: str
    error_details: dict[str, Any] | None = None
    order_code: str | None = None
    occurred_at: datetime


class StatsIncrement(BaseModel):
    """Counter deltas added to one day's statistics row."""

    orders_processed: int = 0
    orders_failed: int = 0
    contacts_created: int = 0
    deals_created: int = 0
    total_amount: float = 0
    total_processing_time_ms: int = 0
    timed_orders: int = 0
    api_errors_upstream: int = 0
    api_errors_crm: int = 0
    rate_limit_hits: int = 0
    reconcile_updates: int = 0

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class DailyStatsRead(BaseModel):
    stat_date: date
    orders_processed: int = 0
    orders_failed: int = 0
    contacts_created: int = 0
    deals_created: int = 0
    total_amount: float = 0
    total_processing_time_ms: int = 0
    timed_orders: int = 0
    avg_processing_time_ms: int = 0
    api_errors_upstream: int = 0
    api_errors_crm: int = 0
    rate_limit_hits: int = 0
    reconcile_updates: int = 0


# ── Run Summaries ───────────────────────────────────────────────────────────


class PollSummary(BaseModel):
    lock_acquired: bool = True
    fetched: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount: float = 0
    avg_processing_time_ms: int = 0
    duration_ms: int = 0

    @property
    def backlog(self) -> int:
        """Fetched orders neither processed nor skipped in this run."""
        return self.fetched - self.processed - self.skipped


class ReconcileSummary(BaseModel):
    lock_acquired: bool = True
    checked: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    watermark_before: datetime | None = None
    watermark_after: datetime | None = None
    duration_ms: int = 0


class HealthStatus(BaseModel):
    status: HealthState = HealthState.OK
    timestamp: datetime
    timezone: str
    checks: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
