"""Structured logging configuration.

Uses structlog for structured JSON logging in production and
human-readable console output in development. A masking processor runs
before rendering so buyer phones, e-mails and OAuth tokens never reach
the log sink in clear text.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from src.kaspi_amo.config import Environment, get_settings

_TOKEN_KEYS = {"token", "access_token", "refresh_token", "client_secret"}


def mask_phone(phone: str | None) -> str | None:
    """Keep the first 2-3 and last 2 characters: +77771234567 -> +77***67."""
    if not phone:
        return phone
    value = str(phone)
    if len(value) < 7:
        return "***"
    head = value[:3] if len(value) > 10 else value[:2]
    return f"{head}***{value[-2:]}"


def mask_email(email: str | None) -> str | None:
    """Keep the first two characters of the local part: john@x.kz -> jo***@x.kz."""
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_token(token: str | None) -> str | None:
    if not token:
        return token
    return f"{str(token)[:6]}***"


def mask_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor masking phone, email and token values."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if "phone" in lowered:
            event_dict[key] = mask_phone(value)
        elif "email" in lowered:
            event_dict[key] = mask_email(value)
        elif lowered in _TOKEN_KEYS:
            event_dict[key] = mask_token(value)
    return event_dict


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )

    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
