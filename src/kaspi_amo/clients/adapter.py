"""Abstract interfaces for the two external systems the pipelines talk to.

The pipelines depend only on these ABCs: OrderSource for the Kaspi order
feed and CRMClient for amoCRM. Concrete httpx implementations live in
kaspi.py and amocrm.py; tests substitute AsyncMock instances.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.kaspi_amo.sync.schemas import Contact, Deal, DealCreate, LineItem, OrdersPage


class OrderSource(ABC):
    """Read-only access to upstream orders.

    Methods:
        list_orders: One page of orders filtered by state.
        list_orders_updated_after: One page of orders modified since a timestamp.
    """

    @abstractmethod
    async def list_orders(
        self,
        states: list[str],
        page: int = 1,
        page_size: int | None = None,
        sort: str = "createdAt:desc",
    ) -> OrdersPage:
        """Fetch one page of orders in ``states``."""
        ...

    @abstractmethod
    async def list_orders_updated_after(
        self,
        updated_after: datetime,
        page: int = 1,
        states: list[str] | None = None,
    ) -> OrdersPage:
        """Fetch one page of orders updated at or after ``updated_after``."""
        ...


class CRMClient(ABC):
    """Mutations and lookups against the CRM.

    Authentication, token refresh and request pacing are the
    implementation's concern; callers only see these operations.
    """

    @abstractmethod
    async def find_contact_by_phone(self, phone: str) -> Contact | None:
        """Contact whose phone normalizes to exactly ``phone``, or None."""
        ...

    @abstractmethod
    async def create_contact(self, name: str, phone: str) -> Contact:
        ...

    @abstractmethod
    async def create_deal_complex(self, deal: DealCreate) -> Deal:
        """Create deal, contact link, tags, line items and note in one logical step.

        A note failure after the deal exists must not fail the call: the
        returned deal id is what makes the creation durable.
        """
        ...

    @abstractmethod
    async def update_deal(self, deal_id: int, price: int) -> None:
        ...

    @abstractmethod
    async def get_deal(self, deal_id: int) -> Deal:
        """Deal with its currently linked line items."""
        ...

    @abstractmethod
    async def unlink_line_items(self, deal_id: int, items: list[LineItem]) -> None:
        ...

    @abstractmethod
    async def link_line_items(self, deal_id: int, items: list[LineItem]) -> None:
        ...

    @abstractmethod
    async def add_note(self, deal_id: int, text: str) -> None:
        ...
