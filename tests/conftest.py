"""Shared fixtures for the sync test suite.

Provides:
- A fresh SQLite database per test (aiosqlite, tables from init_db)
- SyncRepository and session factory bound to it
- Settings isolated from the process environment and .env
- AsyncMock collaborators for the order source, CRM and alerts
- An order factory producing valid KaspiOrder instances
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.kaspi_amo.alerts.service import AlertService
from src.kaspi_amo.clients.adapter import CRMClient, OrderSource
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.database import init_db, make_session_factory
from src.kaspi_amo.sync.repository import SyncRepository
from src.kaspi_amo.sync.schemas import (
    Contact,
    Deal,
    KaspiBuyer,
    KaspiItem,
    KaspiOrder,
    OrdersPage,
)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all tables created."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def repository(session_factory) -> SyncRepository:
    return SyncRepository(session_factory)


@pytest.fixture
def settings() -> Settings:
    """Settings that ignore .env so tests are deterministic."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        KASPI_BASE_URL="https://kaspi.test/shop/api",
        KASPI_API_TOKEN="kaspi-secret",
        KASPI_PAGE_SIZE=50,
        AMO_BASE_URL="https://shop.amocrm.test",
        AMO_CLIENT_ID="client-id",
        AMO_CLIENT_SECRET="client-secret",
        AMO_REDIRECT_URI="https://shop.test/oauth",
        AMO_ACCESS_TOKEN="access-1",
        AMO_REFRESH_TOKEN="refresh-1",
        AMO_PIPELINE_ID=77,
        AMO_STATUS_ID=142,
        AMO_CATALOG_ID=1001,
        DRY_RUN=False,
        ALERT_FAIL_STREAK=3,
        ALERT_BACKLOG_THRESHOLD=2,
        ALERT_COOLDOWN_SECONDS=300,
        HEALTH_BASIC_USER="admin",
        HEALTH_BASIC_PASS="s3cret",
    )


@pytest.fixture
def make_order() -> Callable[..., KaspiOrder]:
    """Factory for KaspiOrder with sensible defaults; any field can be overridden."""

    def _make(code: str = "ORDER-1", **overrides) -> KaspiOrder:
        defaults = {
            "id": f"id-{code}",
            "code": code,
            "total_price": 1000,
            "state": "NEW",
            "created_at": datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc),
            "updated_at": datetime(2026, 10, 19, 6, 30, tzinfo=timezone.utc),
            "buyer": KaspiBuyer(
                first_name="Aigerim",
                last_name="Nurlanova",
                phone="+7 (777) 123-45-67",
            ),
            "items": [KaspiItem(sku="SKU-1", name="Phone case", quantity=2, price=500)],
        }
        defaults.update(overrides)
        return KaspiOrder(**defaults)

    return _make


@pytest.fixture
def crm() -> AsyncMock:
    """CRM client mock: no existing contact, creations succeed."""
    client = AsyncMock(spec=CRMClient)
    client.find_contact_by_phone.return_value = None
    client.create_contact.return_value = Contact(id=501, name="Nurlanova Aigerim")
    client.create_deal_complex.return_value = Deal(id=9001, name="Kaspi #ORDER-1", price=1000)
    client.get_deal.return_value = Deal(id=9001, items=[])
    return client


@pytest.fixture
def source() -> AsyncMock:
    """Order source mock returning an empty feed unless configured."""
    feed = AsyncMock(spec=OrderSource)
    feed.list_orders.return_value = OrdersPage(items=[])
    feed.list_orders_updated_after.return_value = OrdersPage(items=[])
    return feed


@pytest.fixture
def alerts() -> AsyncMock:
    service = AsyncMock(spec=AlertService)
    service.send_critical.return_value = True
    service.send_warning.return_value = True
    return service
