"""Tests for Settings parsing and the logging mask helpers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.logging import mask_email, mask_phone, mask_sensitive, mask_token


class TestSettings:
    """Test environment parsing and derived values."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.TIMEZONE == "Asia/Almaty"
        assert settings.DRY_RUN is False
        assert settings.allowed_states == ["NEW", "SIGN_REQUIRED", "PICKUP", "DELIVERY"]
        assert settings.AMO_CATALOG_ID is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DRY_RUN", "true")
        monkeypatch.setenv("AMO_PIPELINE_ID", "77")
        monkeypatch.setenv("KASPI_ALLOWED_STATES", " NEW , PICKUP ,, ")

        settings = Settings(_env_file=None)

        assert settings.DRY_RUN is True
        assert settings.AMO_PIPELINE_ID == 77
        assert settings.allowed_states == ["NEW", "PICKUP"]

    def test_amo_rate_capped(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, AMO_RPS=8)

    def test_page_size_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, KASPI_PAGE_SIZE=0)

    @pytest.mark.parametrize(
        "base, version, expected",
        [
            ("https://kaspi.kz/shop/api", "v2", "https://kaspi.kz/shop/api/v2"),
            ("https://kaspi.kz/shop/api/v2/", "v2", "https://kaspi.kz/shop/api/v2"),
            ("https://kaspi.kz/shop/api", "", "https://kaspi.kz/shop/api"),
        ],
    )
    def test_kaspi_api_url(self, base, version, expected):
        settings = Settings(_env_file=None, KASPI_BASE_URL=base, KASPI_API_VERSION=version)
        assert settings.kaspi_api_url() == expected

    def test_alert_channel_detection(self):
        assert Settings(_env_file=None).has_alert_channel is False
        assert Settings(
            _env_file=None, ALERT_TELEGRAM_BOT_TOKEN="t", ALERT_TELEGRAM_CHAT_ID="1"
        ).has_alert_channel is True
        assert Settings(_env_file=None, ALERT_EMAIL_TO="ops@shop.kz").has_alert_channel is False


class TestMasking:
    """Test that personal data and secrets are masked for logs."""

    def test_mask_phone(self):
        assert mask_phone("+77771234567") == "+77***67"
        assert mask_phone("87771234") == "87***34"
        assert mask_phone("12345") == "***"
        assert mask_phone(None) is None

    def test_mask_email(self):
        assert mask_email("aigerim@mail.kz") == "ai***@mail.kz"
        assert mask_email("not-an-email") == "not-an-email"

    def test_mask_token(self):
        assert mask_token("abcdef123456") == "abcdef***"

    def test_processor_masks_by_key(self):
        event = mask_sensitive(
            None,
            "info",
            {
                "event": "amocrm.contact_created",
                "phone": "+77771234567",
                "buyer_email": "aigerim@mail.kz",
                "access_token": "abcdef123456",
                "contact_id": 501,
            },
        )

        assert event["phone"] == "+77***67"
        assert event["buyer_email"] == "ai***@mail.kz"
        assert event["access_token"] == "abcdef***"
        assert event["contact_id"] == 501
        assert event["event"] == "amocrm.contact_created"
