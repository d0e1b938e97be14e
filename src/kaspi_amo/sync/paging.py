"""Collect every page of an order listing up to a page ceiling."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from src.kaspi_amo.sync.schemas import KaspiOrder, OrdersPage

logger = structlog.get_logger(__name__)


async def fetch_all_pages(
    fetch_page: Callable[[int], Awaitable[OrdersPage]],
    *,
    page_size: int,
    max_pages: int,
) -> list[KaspiOrder]:
    """Call ``fetch_page(1)``, ``fetch_page(2)``... and concatenate the items.

    Stops on an empty page, on the last page according to ``totalPages``
    or, when the response carries no meta, on a short page. ``max_pages``
    guards against a feed that never ends.
    """
    orders: list[KaspiOrder] = []
    page = 1
    while True:
        result = await fetch_page(page)
        if not result.items:
            break
        orders.extend(result.items)

        if result.meta is not None and result.meta.total_pages is not None:
            has_more = page < result.meta.total_pages
        else:
            has_more = len(result.items) >= page_size
        if not has_more:
            break

        if page >= max_pages:
            logger.warning("paging.max_pages_reached", max_pages=max_pages, fetched=len(orders))
            break
        page += 1
    return orders
