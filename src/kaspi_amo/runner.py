"""Process entry points for the scheduled pipelines.

Wires the concrete components from Settings, runs one pipeline and maps
the outcome to a process exit code:

- 0: run completed, lock held elsewhere, or stopped by SIGTERM/SIGINT
- 1: database unreachable or the batch raised
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from src.kaspi_amo.alerts.channels import build_channels
from src.kaspi_amo.alerts.service import AlertService
from src.kaspi_amo.clients.amocrm import AmoCRMClient
from src.kaspi_amo.clients.kaspi import KaspiClient
from src.kaspi_amo.config import Settings, get_settings
from src.kaspi_amo.core.database import check_connection, close_db, get_engine, make_session_factory
from src.kaspi_amo.core.logging import configure_structlog
from src.kaspi_amo.core.rate_gate import RateGate
from src.kaspi_amo.sync.health import HealthReporter
from src.kaspi_amo.sync.locks import LockManager
from src.kaspi_amo.sync.poll import PollPipeline
from src.kaspi_amo.sync.processor import OrderProcessor
from src.kaspi_amo.sync.reconcile import ReconcilePipeline
from src.kaspi_amo.sync.repository import SyncRepository

logger = structlog.get_logger(__name__)

PIPELINES = ("poll", "reconcile", "thresholds")


@dataclass
class Components:
    repository: SyncRepository
    alerts: AlertService
    poll: PollPipeline
    reconcile: ReconcilePipeline
    health: HealthReporter


def build_components(settings: Settings, engine: AsyncEngine) -> Components:
    """Construct every collaborator the pipelines need."""
    session_factory = make_session_factory(engine)
    repository = SyncRepository(session_factory)
    locks = LockManager(session_factory)
    alerts = AlertService(
        repository,
        build_channels(settings),
        cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS,
    )
    source = KaspiClient.from_settings(settings)
    crm = AmoCRMClient(settings, repository, RateGate(settings.AMO_RPS))
    processor = OrderProcessor(repository, crm, settings)
    return Components(
        repository=repository,
        alerts=alerts,
        poll=PollPipeline(repository, locks, source, processor, alerts, settings),
        reconcile=ReconcilePipeline(repository, locks, source, crm, processor, alerts, settings),
        health=HealthReporter(
            repository, settings, check_db=lambda: check_connection(engine), alerts=alerts
        ),
    )


def _install_signal_handlers(task: asyncio.Task) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            # Windows event loops
            logger.debug("runner.signal_handler_unsupported", signal=sig.name)


async def _execute(name: str, components: Components) -> None:
    if name == "poll":
        await components.poll.run()
    elif name == "reconcile":
        await components.reconcile.run()
    elif name == "thresholds":
        await components.health.check_thresholds()
    else:
        raise ValueError(f"Unknown pipeline: {name}")


async def run_pipeline(name: str, settings: Settings | None = None) -> int:
    """Run one pipeline to completion and return the process exit code."""
    settings = settings or get_settings()
    configure_structlog()
    log = logger.bind(pipeline=name, environment=settings.ENVIRONMENT.value)

    current = asyncio.current_task()
    if current is not None:
        _install_signal_handlers(current)

    engine = get_engine()
    try:
        try:
            await check_connection(engine)
        except Exception:
            log.error("runner.database_unavailable", exc_info=True)
            return 1

        components = build_components(settings, engine)
        try:
            await _execute(name, components)
        except asyncio.CancelledError:
            log.warning("runner.interrupted")
            return 0
        except Exception:
            log.error("runner.failed", exc_info=True)
            return 1
        log.info("runner.finished")
        return 0
    finally:
        await close_db()


def run(name: str) -> int:
    """Synchronous wrapper for console scripts."""
    return asyncio.run(run_pipeline(name))
