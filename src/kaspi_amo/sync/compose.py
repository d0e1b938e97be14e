"""Turn a Kaspi order into the text and payloads the CRM receives."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from src.kaspi_amo.sync.schemas import KaspiItem, KaspiOrder, LineItem

NO_ITEMS_TEXT = "No items"


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def format_items(items: list[KaspiItem]) -> str:
    """``Phone case x 2 - 1500 KZT; Charger x 1 - 4000 KZT``."""
    if not items:
        return NO_ITEMS_TEXT
    return "; ".join(
        f"{item.name or item.sku} x {item.quantity or 1} - {_format_amount(item.price or 0)} KZT"
        for item in items
    )


def delivery_address(order: KaspiOrder) -> str | None:
    """Region, city, street for deliveries; point name and address for pickups."""
    parts: list[str | None] = []
    if order.delivery is not None:
        parts = [order.delivery.region, order.delivery.city, order.delivery.address]
    elif order.pickup is not None:
        parts = [order.pickup.point_name, order.pickup.address]
    joined = ", ".join(p for p in parts if p)
    return joined or None


def deal_name(order: KaspiOrder, contact: str) -> str:
    return f"Kaspi #{order.code} - {contact}"


def deal_tags(order: KaspiOrder, reconciled: bool = False) -> list[str]:
    tags = ["kaspi", order.state.lower()]
    if reconciled:
        tags.append("reconciled")
    return tags


def creation_note(order: KaspiOrder, template: str) -> str:
    """Fill ``{items}``, ``{total}`` and ``{address}`` placeholders in ``template``."""
    text = template.replace("{items}", format_items(order.items))
    text = text.replace("{total}", _format_amount(order.total_price))
    address = delivery_address(order)
    if "{address}" in text:
        text = text.replace("{address}", address or "")
    elif address:
        text = f"{text}\nAddress: {address}"
    return text


def update_note(order: KaspiOrder, tz_name: str, at: datetime) -> str:
    """Audit note appended when reconciliation changes a deal."""
    local = at.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d %H:%M")
    return (
        f"Updated by reconciliation {local}\n"
        f"State: {order.state}\n"
        f"Items: {format_items(order.items)}\n"
        f"Total: {_format_amount(order.total_price)} KZT"
    )


def line_items(
    order: KaspiOrder, catalog_id: int | None = None
) -> list[LineItem]:
    """Free-position CRM line items for every order item."""
    return [
        LineItem(
            catalog_id=catalog_id,
            name=item.name or item.sku,
            quantity=item.quantity or 1,
            price=round(item.price or 0),
        )
        for item in order.items
    ]
