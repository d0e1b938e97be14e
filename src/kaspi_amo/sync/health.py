"""Health and threshold checks over persisted sync state.

HealthReporter only reads the store. ``get_status`` builds the report
served by ``GET /health``; ``check_thresholds`` turns a stale heartbeat
or a long failure streak into critical alerts and is meant for a
periodic trigger.

Status rules:
- error: database unreachable, or failure streak >= ALERT_FAIL_STREAK
- warning: stale heartbeat, stale reconcile watermark, failure rate
  above 10% today, more than 10 rate-limit hits today
- ok otherwise
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime

import structlog

from src.kaspi_amo.alerts.service import AlertService
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.monitoring import set_health_gauges
from src.kaspi_amo.sync.repository import SyncRepository, local_date, utcnow
from src.kaspi_amo.sync.schemas import HealthState, HealthStatus

logger = structlog.get_logger(__name__)

FAILURE_RATE_WARNING = 0.1
RATE_LIMIT_WARNING = 10
RECENT_ERRORS_LIMIT = 5


def _mask_order_code(code: str | None) -> str | None:
    if not code:
        return None
    return f"***{code[-4:]}"


def _age_minutes(at: datetime, now: datetime) -> int:
    return int((now - at).total_seconds() // 60)


class HealthReporter:
    """Aggregates staleness checks and daily counters.

    Args:
        repository: Persistent sync state (read only).
        settings: Thresholds and timezone.
        check_db: Async probe that raises when the database is unreachable.
        alerts: Alert service used by ``check_thresholds``.
        clock: Returns the current UTC time, injectable for tests.
    """

    def __init__(
        self,
        repository: SyncRepository,
        settings: Settings,
        check_db: Callable[[], Awaitable[bool]],
        alerts: AlertService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._check_db = check_db
        self._alerts = alerts
        self._clock = clock

    async def get_status(self) -> HealthStatus:
        now = self._clock()
        report = HealthStatus(timestamp=now, timezone=self._settings.TIMEZONE)

        try:
            await self._check_db()
            report.checks["database"] = True
            await self._collect(report, now)
        except Exception as exc:
            logger.error("health.check_failed", error=str(exc))
            report.checks["database"] = False
            report.errors.append(f"Database check failed: {exc}")

        if report.errors:
            report.status = HealthState.ERROR
        elif report.warnings:
            report.status = HealthState.WARNING
        return report

    async def _collect(self, report: HealthStatus, now: datetime) -> None:
        settings = self._settings

        heartbeat = await self._repository.get_heartbeat()
        heartbeat_age = None
        report.checks["heartbeat"] = False
        if heartbeat is None:
            report.warnings.append("No poll heartbeat recorded yet")
        else:
            heartbeat_age = _age_minutes(heartbeat, now)
            report.checks["last_poll"] = {"timestamp": heartbeat.isoformat(), "age_minutes": heartbeat_age}
            if heartbeat_age > settings.ALERT_HEARTBEAT_MINUTES:
                report.warnings.append(
                    f"Last poll was {heartbeat_age} minutes ago "
                    f"(threshold: {settings.ALERT_HEARTBEAT_MINUTES})"
                )
            else:
                report.checks["heartbeat"] = True

        watermark = await self._repository.get_reconcile_watermark()
        watermark_age = None
        if watermark is not None:
            watermark_age = _age_minutes(watermark, now)
            report.checks["last_reconcile"] = {
                "watermark": watermark.isoformat(),
                "age_minutes": watermark_age,
            }
            if watermark_age > settings.RECONCILE_STALE_MINUTES:
                report.warnings.append(f"Reconcile watermark is {watermark_age} minutes old")

        failures = await self._repository.get_consecutive_failures()
        report.checks["consecutive_failures"] = failures
        if failures >= settings.ALERT_FAIL_STREAK:
            report.errors.append(f"Too many consecutive failures: {failures}")

        today = await self._repository.get_daily_stats(local_date(settings.TIMEZONE, now))
        if today is not None:
            report.checks["today"] = {
                "orders_processed": today.orders_processed,
                "orders_failed": today.orders_failed,
                "deals_created": today.deals_created,
                "api_errors": today.api_errors_upstream + today.api_errors_crm,
                "rate_limit_hits": today.rate_limit_hits,
                "avg_processing_time_ms": today.avg_processing_time_ms,
            }
            if today.orders_failed > today.orders_processed * FAILURE_RATE_WARNING:
                report.warnings.append(
                    f"High failure rate: {today.orders_failed}/{today.orders_processed}"
                )
            if today.rate_limit_hits > RATE_LIMIT_WARNING:
                report.warnings.append(f"High rate limit hits: {today.rate_limit_hits}")

        recent = await self._repository.get_recent_errors(RECENT_ERRORS_LIMIT)
        if recent:
            report.checks["recent_errors"] = [
                {
                    "type": e.error_type,
                    "message": e.error_message,
                    "order_code": _mask_order_code(e.order_code),
                    "timestamp": e.occurred_at.isoformat(),
                }
                for e in recent
            ]

        set_health_gauges(
            heartbeat_age=heartbeat_age * 60 if heartbeat_age is not None else None,
            reconcile_lag=watermark_age * 60 if watermark_age is not None else None,
            failures=failures,
        )

    async def check_thresholds(self) -> list[str]:
        """Raise critical alerts for a stale heartbeat or a failure streak.

        Returns:
            Titles of the alerts that were raised (cooldown permitting).
        """
        if self._alerts is None:
            return []
        settings = self._settings
        now = self._clock()
        raised: list[str] = []

        heartbeat = await self._repository.get_heartbeat()
        if heartbeat is not None:
            age = _age_minutes(heartbeat, now)
            if age > settings.ALERT_HEARTBEAT_MINUTES:
                title = "Heartbeat stale"
                if await self._alerts.send_critical(
                    title,
                    f"Last successful poll was {age} minutes ago",
                    {"last_heartbeat": heartbeat.isoformat(), "threshold": settings.ALERT_HEARTBEAT_MINUTES},
                ):
                    raised.append(title)

        failures = await self._repository.get_consecutive_failures()
        if failures >= settings.ALERT_FAIL_STREAK:
            title = "Repeated poll failures"
            if await self._alerts.send_critical(
                title,
                f"{failures} consecutive poll runs failed",
                {"consecutive_failures": failures, "threshold": settings.ALERT_FAIL_STREAK},
            ):
                raised.append(title)
        return raised
