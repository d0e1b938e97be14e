"""Async HTTP client for the amoCRM v4 REST API.

AmoCRMClient implements CRMClient over httpx with:
- RateGate pacing in front of every request (amoCRM allows ~7 req/s)
- OAuth access/refresh tokens persisted through the repository; expired
  tokens are refreshed before use and a 401 triggers exactly one
  refresh-and-resend
- Bounded retries per operation class (reads/updates 2, creates 3);
  exhausted failures surface as CRMAPIError

The compound deal creation treats a failed note as a warning: once the
deal id exists the creation is durable.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import httpx
import structlog

from src.kaspi_amo.clients.adapter import CRMClient
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.rate_gate import RateGate
from src.kaspi_amo.core.retry import (
    CREATE_ATTEMPTS,
    READ_ATTEMPTS,
    UPDATE_ATTEMPTS,
    with_retry,
)
from src.kaspi_amo.errors import AuthenticationError, CRMAPIError
from src.kaspi_amo.sync.phone import normalize_phone
from src.kaspi_amo.sync.repository import SyncRepository, utcnow
from src.kaspi_amo.sync.schemas import Contact, Deal, DealCreate, LineItem, OAuthTokens

logger = structlog.get_logger(__name__)

# Lifetime assumed for env-seeded tokens whose real expiry is unknown
_SEEDED_TOKEN_TTL = timedelta(hours=24)
_DEFAULT_EXPIRES_IN = 86400


def _item_payload(item: LineItem) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": item.name,
        "quantity": item.quantity,
        "price": item.price,
    }
    if item.catalog_id is not None:
        payload["catalog_id"] = item.catalog_id
    return payload


def _parse_line_item(element: dict[str, Any]) -> LineItem:
    metadata = element.get("metadata") or {}
    return LineItem(
        id=element.get("id"),
        catalog_id=metadata.get("catalog_id") or element.get("catalog_id"),
        name=element.get("name") or str(element.get("id", "")),
        quantity=int(metadata.get("quantity") or element.get("quantity") or 1),
        price=round(float(element.get("price") or 0)),
    )


class AmoCRMClient(CRMClient):
    """amoCRM client.

    Args:
        settings: Application settings (base URL, OAuth app credentials,
            pipeline/status ids, phone region).
        token_store: Repository holding the OAuth token pair.
        rate_gate: Pacing gate shared by every request of this process.
        retry_delay: Initial backoff delay; 0 disables waiting (tests).
        transport: Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        settings: Settings,
        token_store: SyncRepository,
        rate_gate: RateGate,
        *,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._tokens = token_store
        self._rate_gate = rate_gate
        self._retry_delay = retry_delay
        self._transport = transport
        self._base_url = settings.AMO_BASE_URL.rstrip("/")
        self._api_url = f"{self._base_url}/api/{settings.AMO_API_VERSION}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.AMO_TIMEOUT,
            transport=self._transport,
        )

    # ── OAuth ───────────────────────────────────────────────────────────────

    async def _current_tokens(self) -> OAuthTokens:
        """Stored tokens, seeded from settings on first use, refreshed if expired."""
        tokens = await self._tokens.get_tokens()
        if tokens is None:
            if not self._settings.AMO_ACCESS_TOKEN:
                raise AuthenticationError("No amoCRM tokens stored or configured")
            tokens = OAuthTokens(
                access_token=self._settings.AMO_ACCESS_TOKEN,
                refresh_token=self._settings.AMO_REFRESH_TOKEN,
                expires_at=utcnow() + _SEEDED_TOKEN_TTL,
            )
            await self._tokens.save_tokens(tokens)
            logger.info("amocrm.tokens_seeded")

        if tokens.expires_at <= utcnow():
            logger.info("amocrm.token_expired")
            tokens = await self.refresh_tokens()
        return tokens

    async def refresh_tokens(self) -> OAuthTokens:
        """Exchange the stored refresh token for a new token pair.

        Raises:
            AuthenticationError: amoCRM refused the refresh or was unreachable.
        """
        current = await self._tokens.get_tokens()
        refresh_token = current.refresh_token if current else self._settings.AMO_REFRESH_TOKEN
        if not refresh_token:
            raise AuthenticationError("No amoCRM refresh token available")

        body = {
            "client_id": self._settings.AMO_CLIENT_ID,
            "client_secret": self._settings.AMO_CLIENT_SECRET,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "redirect_uri": self._settings.AMO_REDIRECT_URI,
        }
        try:
            await self._rate_gate.wait()
            async with self._client() as client:
                response = await client.post(f"{self._base_url}/oauth2/access_token", json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.error("amocrm.token_refresh_failed", error=repr(exc))
            raise AuthenticationError(f"amoCRM token refresh failed: {exc!r}") from exc

        tokens = OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=utcnow() + timedelta(seconds=int(data.get("expires_in", _DEFAULT_EXPIRES_IN))),
        )
        await self._tokens.save_tokens(tokens)
        logger.info("amocrm.tokens_refreshed")
        return tokens

    # ── Transport ───────────────────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        access_token: str,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        await self._rate_gate.wait()
        async with self._client() as client:
            return await client.request(
                method,
                f"{self._api_url}{path}",
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        tokens = await self._current_tokens()
        response = await self._send(method, path, tokens.access_token, params, json)
        if response.status_code == 401:
            logger.warning("amocrm.unauthorized", method=method, path=path)
            tokens = await self.refresh_tokens()
            response = await self._send(method, path, tokens.access_token, params, json)
        response.raise_for_status()
        return response

    async def _call(
        self,
        operation: str,
        attempts: int,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            return await with_retry(attempts, initial_delay=self._retry_delay)(self._request)(
                method, path, params=params, json=json
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("amocrm.request_failed", operation=operation, status_code=status)
            if status == 401:
                raise AuthenticationError(
                    f"amoCRM {operation} rejected the refreshed token", status_code=status
                ) from exc
            raise CRMAPIError(
                f"amoCRM {operation} failed with HTTP {status}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("amocrm.request_failed", operation=operation, error=repr(exc))
            raise CRMAPIError(f"amoCRM {operation} failed: {exc!r}") from exc

    # ── Contacts ────────────────────────────────────────────────────────────

    async def find_contact_by_phone(self, phone: str) -> Contact | None:
        """Search contacts by phone and keep only exact normalized matches."""
        region = self._settings.PHONE_DEFAULT_REGION
        response = await self._call(
            "find_contact", READ_ATTEMPTS, "GET", "/contacts", params={"query": phone}
        )
        if response.status_code == 204 or not response.content:
            return None

        contacts = (response.json().get("_embedded") or {}).get("contacts") or []
        for contact in contacts:
            for field in contact.get("custom_fields_values") or []:
                if field.get("field_code") != "PHONE":
                    continue
                for value in field.get("values") or []:
                    if normalize_phone(value.get("value"), region) == phone:
                        logger.debug("amocrm.contact_found", contact_id=contact["id"], phone=phone)
                        return Contact(id=contact["id"], name=contact.get("name"))
        return None

    async def create_contact(self, name: str, phone: str) -> Contact:
        payload = [
            {
                "name": name,
                "custom_fields_values": [
                    {"field_code": "PHONE", "values": [{"value": phone, "enum_code": "WORK"}]}
                ],
            }
        ]
        response = await self._call("create_contact", CREATE_ATTEMPTS, "POST", "/contacts", json=payload)
        created = response.json()["_embedded"]["contacts"][0]
        logger.info("amocrm.contact_created", contact_id=created["id"], phone=phone)
        return Contact(id=created["id"], name=name)

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal_complex(self, deal: DealCreate) -> Deal:
        """POST /leads/complex, then attach the note.

        Args:
            deal: Deal fields, contact id, tags, line items and note text.

        Returns:
            The created Deal. A note failure is logged and does not raise.
        """
        lead: dict[str, Any] = {
            "name": deal.name,
            "price": deal.price,
            "_embedded": {
                "contacts": [{"id": deal.contact_id}],
                "tags": [{"name": tag} for tag in deal.tags],
            },
        }
        if self._settings.AMO_PIPELINE_ID is not None:
            lead["pipeline_id"] = self._settings.AMO_PIPELINE_ID
        if self._settings.AMO_STATUS_ID is not None:
            lead["status_id"] = self._settings.AMO_STATUS_ID
        if self._settings.USE_FREE_POSITIONS and deal.items:
            lead["_embedded"]["catalog_elements"] = [_item_payload(i) for i in deal.items]

        response = await self._call(
            "create_deal", CREATE_ATTEMPTS, "POST", "/leads/complex", json=[lead]
        )
        data = response.json()
        if isinstance(data, list):
            deal_id = data[0]["id"]
        else:
            deal_id = data["_embedded"]["leads"][0]["id"]
        logger.info("amocrm.deal_created", deal_id=deal_id, price=deal.price, items=len(deal.items))

        if deal.note:
            try:
                await self.add_note(deal_id, deal.note)
            except CRMAPIError as exc:
                logger.warning("amocrm.deal_note_failed", deal_id=deal_id, error=str(exc))

        return Deal(id=deal_id, name=deal.name, price=deal.price, items=deal.items)

    async def update_deal(self, deal_id: int, price: int) -> None:
        await self._call(
            "update_deal",
            UPDATE_ATTEMPTS,
            "PATCH",
            f"/leads/{deal_id}",
            json={"id": deal_id, "price": price},
        )
        logger.info("amocrm.deal_updated", deal_id=deal_id, price=price)

    async def get_deal(self, deal_id: int) -> Deal:
        response = await self._call(
            "get_deal",
            READ_ATTEMPTS,
            "GET",
            f"/leads/{deal_id}",
            params={"with": "catalog_elements"},
        )
        data = response.json()
        elements = (data.get("_embedded") or {}).get("catalog_elements") or []
        return Deal(
            id=data.get("id", deal_id),
            name=data.get("name"),
            price=data.get("price"),
            items=[_parse_line_item(e) for e in elements],
        )

    async def unlink_line_items(self, deal_id: int, items: list[LineItem]) -> None:
        payload = {
            "catalog_elements": [
                {"id": item.id, "catalog_id": item.catalog_id} for item in items
            ]
        }
        await self._call(
            "unlink_items", UPDATE_ATTEMPTS, "POST", f"/leads/{deal_id}/unlink", json=payload
        )
        logger.info("amocrm.items_unlinked", deal_id=deal_id, count=len(items))

    async def link_line_items(self, deal_id: int, items: list[LineItem]) -> None:
        payload = {"catalog_elements": [_item_payload(item) for item in items]}
        await self._call(
            "link_items", UPDATE_ATTEMPTS, "POST", f"/leads/{deal_id}/link", json=payload
        )
        logger.info("amocrm.items_linked", deal_id=deal_id, count=len(items))

    async def add_note(self, deal_id: int, text: str) -> None:
        payload = [{"entity_id": deal_id, "note_type": "common", "params": {"text": text}}]
        await self._call("add_note", UPDATE_ATTEMPTS, "POST", "/leads/notes", json=payload)
        logger.debug("amocrm.note_added", deal_id=deal_id, length=len(text))
