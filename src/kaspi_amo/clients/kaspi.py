"""Async HTTP client for the Kaspi merchant order API.

KaspiClient implements OrderSource over httpx. Listing calls are
read operations and retry with the read ceiling; anything still failing
after retries (or returning a body that does not validate) surfaces as
UpstreamAPIError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from src.kaspi_amo.clients.adapter import OrderSource
from src.kaspi_amo.config import Settings
from src.kaspi_amo.core.retry import READ_ATTEMPTS, with_retry
from src.kaspi_amo.errors import UpstreamAPIError
from src.kaspi_amo.sync.schemas import OrdersPage

logger = structlog.get_logger(__name__)


class KaspiClient(OrderSource):
    """Kaspi order feed client.

    Args:
        base_url: API root including the version segment.
        token: Merchant API token sent as ``X-Auth-Token``.
        page_size: Default page size for listings.
        timeout: Per-request timeout in seconds.
        retry_delay: Initial backoff delay; 0 disables waiting (tests).
        transport: Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        page_size: int = 100,
        timeout: float = 30.0,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Auth-Token": token,
        }
        self.page_size = page_size
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> KaspiClient:
        return cls(
            settings.kaspi_api_url(),
            settings.KASPI_API_TOKEN,
            page_size=settings.KASPI_PAGE_SIZE,
            timeout=settings.KASPI_TIMEOUT,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def list_orders(
        self,
        states: list[str],
        page: int = 1,
        page_size: int | None = None,
        sort: str = "createdAt:desc",
    ) -> OrdersPage:
        """GET /orders filtered by state.

        Args:
            states: Allowed order states, sent comma-joined.
            page: 1-based page number.
            page_size: Overrides the client default.
            sort: Sort expression understood by Kaspi.

        Returns:
            Parsed OrdersPage.
        """
        params = {
            "page": page,
            "pageSize": page_size or self.page_size,
            "state": ",".join(states),
            "sort": sort,
        }
        return await self._get_orders(params)

    async def list_orders_updated_after(
        self,
        updated_after: datetime,
        page: int = 1,
        states: list[str] | None = None,
    ) -> OrdersPage:
        """GET /orders changed since ``updated_after``, oldest change first."""
        if updated_after.tzinfo is None:
            updated_after = updated_after.replace(tzinfo=timezone.utc)
        params: dict[str, Any] = {
            "page": page,
            "pageSize": self.page_size,
            "updatedAfter": updated_after.astimezone(timezone.utc).isoformat(),
            "sort": "updatedAt:asc",
        }
        if states:
            params["state"] = ",".join(states)
        return await self._get_orders(params)

    async def _get_orders(self, params: dict[str, Any]) -> OrdersPage:
        async def _send() -> OrdersPage:
            async with self._client() as client:
                response = await client.get("/orders", params=params)
                response.raise_for_status()
                return OrdersPage.model_validate(response.json())

        try:
            result = await with_retry(READ_ATTEMPTS, initial_delay=self._retry_delay)(_send)()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("kaspi.request_failed", status_code=status, page=params.get("page"))
            raise UpstreamAPIError(
                f"Kaspi GET /orders failed with HTTP {status}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("kaspi.request_failed", error=repr(exc), page=params.get("page"))
            raise UpstreamAPIError(f"Kaspi GET /orders failed: {exc!r}") from exc
        except ValidationError as exc:
            logger.error("kaspi.invalid_response", error=str(exc), page=params.get("page"))
            raise UpstreamAPIError(f"Kaspi returned an invalid order page: {exc}") from exc

        logger.info(
            "kaspi.orders_fetched",
            page=params.get("page"),
            count=len(result.items),
            total_count=result.meta.total_count if result.meta else None,
        )
        return result
