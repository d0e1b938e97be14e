"""Alert delivery channels: Telegram bot messages and SMTP e-mail.

Channels only do network I/O and raise on failure; cooldown, audit
logging and error swallowing belong to AlertService.
"""

from __future__ import annotations

import html
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib
import httpx
import structlog

from src.kaspi_amo.config import Settings

logger = structlog.get_logger(__name__)


class AlertChannel(ABC):
    """Abstract base for delivery channels."""

    channel_type: str

    @abstractmethod
    async def send(self, subject: str, body: str) -> None:
        """Deliver one alert. Raises on delivery failure."""
        raise NotImplementedError


class TelegramChannel(AlertChannel):
    """Posts alerts to a Telegram chat through the Bot API.

    Args:
        bot_token: Bot API token.
        chat_id: Target chat id.
        transport: Optional httpx transport (tests use MockTransport).
    """

    channel_type = "telegram"
    TIMEOUT = 5.0
    API_URL = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._transport = transport

    async def send(self, subject: str, body: str) -> None:
        payload = {
            "chat_id": self._chat_id,
            "text": f"<b>{html.escape(subject)}</b>\n\n<pre>{html.escape(body)}</pre>",
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        async with httpx.AsyncClient(timeout=self.TIMEOUT, transport=self._transport) as client:
            response = await client.post(
                f"{self.API_URL}/bot{self._bot_token}/sendMessage", json=payload
            )
            response.raise_for_status()
        logger.debug("alerts.telegram_sent", chat_id=self._chat_id)


class EmailChannel(AlertChannel):
    """Sends alerts over SMTP. Port 465 uses implicit TLS, 587 STARTTLS."""

    channel_type = "email"
    TIMEOUT = 10

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int,
        recipient: str,
        from_email: str,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.recipient = recipient
        self.from_email = from_email
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password

    def _build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.from_email
        message["To"] = self.recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(body)
        return message

    async def send(self, subject: str, body: str) -> None:
        message = self._build_message(subject, body)
        async with aiosmtplib.SMTP(
            hostname=self.smtp_host,
            port=self.smtp_port,
            timeout=self.TIMEOUT,
            use_tls=self.smtp_port == 465,
            start_tls=self.smtp_port == 587,
        ) as smtp:
            if self.smtp_user and self.smtp_password:
                await smtp.login(self.smtp_user, self.smtp_password)
            await smtp.send_message(message)
        logger.debug("alerts.email_sent", email=self.recipient)


def build_channels(settings: Settings) -> list[AlertChannel]:
    """Channels for every destination configured in ``settings``."""
    channels: list[AlertChannel] = []
    if settings.ALERT_TELEGRAM_BOT_TOKEN and settings.ALERT_TELEGRAM_CHAT_ID:
        channels.append(
            TelegramChannel(settings.ALERT_TELEGRAM_BOT_TOKEN, settings.ALERT_TELEGRAM_CHAT_ID)
        )
    if settings.ALERT_EMAIL_TO and settings.ALERT_EMAIL_SMTP_HOST:
        channels.append(
            EmailChannel(
                smtp_host=settings.ALERT_EMAIL_SMTP_HOST,
                smtp_port=settings.ALERT_EMAIL_SMTP_PORT,
                recipient=settings.ALERT_EMAIL_TO,
                from_email=settings.ALERT_EMAIL_FROM,
                smtp_user=settings.ALERT_EMAIL_SMTP_USER or None,
                smtp_password=settings.ALERT_EMAIL_SMTP_PASS or None,
            )
        )
    return channels
