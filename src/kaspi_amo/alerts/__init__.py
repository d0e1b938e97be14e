"""Operator alerts package."""

from src.kaspi_amo.alerts.channels import AlertChannel, EmailChannel, TelegramChannel, build_channels
from src.kaspi_amo.alerts.service import AlertService

__all__ = ["AlertChannel", "AlertService", "EmailChannel", "TelegramChannel", "build_channels"]
