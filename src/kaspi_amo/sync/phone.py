"""Buyer phone normalization and contact naming.

Every phone that reaches the CRM goes through ``normalize_phone`` so the
same person always converges on one E.164 string (``+77771234567``),
whatever format Kaspi delivered: ``8 777 123 45 67``, ``+7 (777)
123-45-67`` and ``7771234567`` all map to the same value.
"""

from __future__ import annotations

import re

import phonenumbers
import structlog

from src.kaspi_amo.core.logging import mask_phone
from src.kaspi_amo.sync.schemas import KaspiBuyer

logger = structlog.get_logger(__name__)

_NON_PHONE_CHARS = re.compile(r"[^\d+]")
_NAME_MASK = re.compile(r"^(\+\d)(\d{3})(\d+)(\d{2})$")

DEFAULT_CONTACT_NAME = "Kaspi buyer"


def normalize_phone(raw: str | None, region: str = "KZ") -> str | None:
    """Normalize a phone number to E.164.

    Args:
        raw: Phone as received from Kaspi, any formatting.
        region: Default region for numbers without a country code.

    Returns:
        E.164 string, or None when the value cannot be a phone number.
    """
    if not raw:
        return None

    cleaned = _NON_PHONE_CHARS.sub("", str(raw))
    if len(cleaned) == 11 and cleaned.startswith("8"):
        cleaned = "+7" + cleaned[1:]
    elif len(cleaned) == 11 and cleaned.startswith("7"):
        cleaned = "+" + cleaned
    elif not cleaned.startswith("+") and len(cleaned) == 10:
        cleaned = "+7" + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, region)
        if phonenumbers.is_valid_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
    except phonenumbers.NumberParseException as exc:
        logger.debug("phone.parse_failed", phone=cleaned, error=str(exc))

    # Plausible international number the metadata does not know yet
    if cleaned.startswith("+") and 11 <= len(cleaned) <= 15 and cleaned[1:].isdigit():
        return cleaned

    logger.warning("phone.normalize_failed", phone=raw)
    return None


def extract_buyer_phone(buyer: KaspiBuyer | None, region: str = "KZ") -> str | None:
    """First phone field of ``buyer`` that normalizes, in priority order."""
    if buyer is None:
        return None
    for candidate in buyer.phone_candidates():
        normalized = normalize_phone(candidate, region)
        if normalized:
            return normalized
    return None


def contact_name(buyer: KaspiBuyer | None, region: str = "KZ") -> str:
    """Display name for a new CRM contact.

    Full name when Kaspi sent one, else the e-mail local part, else a
    masked phone, else a generic placeholder.
    """
    if buyer is None:
        return DEFAULT_CONTACT_NAME

    parts = [p for p in (buyer.last_name, buyer.first_name, buyer.middle_name) if p]
    if parts:
        return " ".join(parts).strip()

    if buyer.email and "@" in buyer.email:
        return buyer.email.split("@", 1)[0]

    phone = extract_buyer_phone(buyer, region)
    if phone:
        match = _NAME_MASK.match(phone)
        masked = f"{match[1]} {match[2]}***{match[4]}" if match else mask_phone(phone)
        return f"Client {masked}"

    return DEFAULT_CONTACT_NAME
