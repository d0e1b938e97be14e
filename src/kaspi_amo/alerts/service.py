"""Best-effort alerting with per-key cooldown.

Every alert is first written to the error log (CRITICAL_ALERT,
WARNING_ALERT or INFO_ALERT) so the audit trail exists even when
delivery fails. Critical and warning alerts then fan out to all
configured channels; info alerts are only logged. Nothing here raises:
delivery and audit failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any

import structlog

from src.kaspi_amo.alerts.channels import AlertChannel
from src.kaspi_amo.core.logging import mask_sensitive
from src.kaspi_amo.sync.repository import SyncRepository
from src.kaspi_amo.sync.schemas import ErrorRecord, ErrorType

logger = structlog.get_logger(__name__)

SUBJECT_PREFIX = "Kaspi-amoCRM"


def format_body(message: str, details: dict[str, Any] | None) -> str:
    """Message followed by the details as JSON, sensitive values masked."""
    if not details:
        return message
    masked = mask_sensitive(None, "alert", dict(details))
    rendered = json.dumps(masked, ensure_ascii=False, indent=2, default=str)
    return f"{message}\n\n{rendered}"


class AlertService:
    """Routes alerts to the error log and delivery channels.

    Args:
        repository: Error log sink.
        channels: Delivery channels; may be empty.
        cooldown_seconds: Minimum gap between two alerts with the same key.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        repository: SyncRepository,
        channels: list[AlertChannel] | None = None,
        cooldown_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._channels = channels or []
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    def _should_send(self, key: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_sent[key] = now
        return True

    async def send_critical(
        self, title: str, message: str, details: dict[str, Any] | None = None
    ) -> bool:
        """Returns False when suppressed by the cooldown."""
        return await self._send("critical", ErrorType.CRITICAL_ALERT, title, message, details)

    async def send_warning(
        self, title: str, message: str, details: dict[str, Any] | None = None
    ) -> bool:
        return await self._send("warning", ErrorType.WARNING_ALERT, title, message, details)

    async def send_info(
        self, title: str, message: str, details: dict[str, Any] | None = None
    ) -> None:
        logger.info("alerts.info", title=title, message=message)
        await self._audit(ErrorType.INFO_ALERT, title, message, details)

    async def _send(
        self,
        level: str,
        error_type: ErrorType,
        title: str,
        message: str,
        details: dict[str, Any] | None,
    ) -> bool:
        if not self._should_send(f"{level}:{title}"):
            logger.debug("alerts.suppressed", level=level, title=title)
            return False

        log = logger.error if level == "critical" else logger.warning
        log("alerts.raised", level=level, title=title, message=message)
        await self._audit(error_type, title, message, details)

        if not self._channels:
            return True

        subject = f"[{level.upper()}] {SUBJECT_PREFIX}: {title}"
        body = format_body(message, details)
        results = await asyncio.gather(
            *(channel.send(subject, body) for channel in self._channels),
            return_exceptions=True,
        )
        for channel, result in zip(self._channels, results):
            if isinstance(result, Exception):
                logger.error(
                    "alerts.delivery_failed",
                    channel=channel.channel_type,
                    error=repr(result),
                )
        return True

    async def _audit(
        self,
        error_type: ErrorType,
        title: str,
        message: str,
        details: dict[str, Any] | None,
    ) -> None:
        try:
            await self._repository.log_error(
                ErrorRecord(error_type=error_type, message=f"{title}: {message}", details=details)
            )
        except Exception:
            logger.error("alerts.audit_failed", title=title, exc_info=True)
