"""FastAPI application factory for the health server.

The app exposes ``/health`` and ``/metrics`` only. A HealthReporter
is built in the lifespan unless one was passed to ``create_app``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from src.kaspi_amo.api.health import router as health_router
from src.kaspi_amo.api.middleware import LoggingMiddleware
from src.kaspi_amo.config import get_settings
from src.kaspi_amo.core.database import check_connection, close_db, get_engine, make_session_factory
from src.kaspi_amo.core.logging import configure_structlog
from src.kaspi_amo.core.monitoring import MetricsMiddleware
from src.kaspi_amo.sync.health import HealthReporter
from src.kaspi_amo.sync.repository import SyncRepository

logger = structlog.get_logger(__name__)


def build_reporter() -> HealthReporter:
    """HealthReporter over the configured database."""
    settings = get_settings()
    engine = get_engine()
    repository = SyncRepository(make_session_factory(engine))
    return HealthReporter(repository, settings, check_db=lambda: check_connection(engine))


def create_app(reporter: HealthReporter | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_structlog()
        owns_engine = reporter is None
        app.state.health_reporter = reporter or build_reporter()
        logger.info("health_server.started", timezone=get_settings().TIMEZONE)
        try:
            yield
        finally:
            if owns_engine:
                await close_db()

    app = FastAPI(
        title="Kaspi amoCRM Sync",
        version="0.1.0",
        description="Health and metrics for the Kaspi to amoCRM order sync",
        lifespan=lifespan,
    )
    if reporter is not None:
        app.state.health_reporter = reporter

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health_router)
    return app
