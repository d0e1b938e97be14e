"""Unit tests for deal name, notes, tags and line-item composition."""

from __future__ import annotations

from datetime import datetime, timezone

from src.kaspi_amo.sync.compose import (
    NO_ITEMS_TEXT,
    creation_note,
    deal_name,
    deal_tags,
    delivery_address,
    format_items,
    line_items,
    update_note,
)
from src.kaspi_amo.sync.schemas import KaspiDelivery, KaspiItem, KaspiPickup


class TestFormatting:
    def test_format_items(self):
        items = [
            KaspiItem(sku="A", name="Phone case", quantity=2, price=1500),
            KaspiItem(sku="B", name="", quantity=1, price=4000.5),
        ]
        assert format_items(items) == "Phone case x 2 - 1500 KZT; B x 1 - 4000.50 KZT"

    def test_format_no_items(self):
        assert format_items([]) == NO_ITEMS_TEXT

    def test_deal_name(self, make_order):
        assert deal_name(make_order(), "Nurlanova Aigerim") == "Kaspi #ORDER-1 - Nurlanova Aigerim"

    def test_tags(self, make_order):
        assert deal_tags(make_order(state="PICKUP")) == ["kaspi", "pickup"]
        assert deal_tags(make_order(), reconciled=True) == ["kaspi", "new", "reconciled"]


class TestAddress:
    def test_delivery_address(self, make_order):
        order = make_order(
            delivery=KaspiDelivery(region="Almaty region", city="Almaty", address="Abay 10")
        )
        assert delivery_address(order) == "Almaty region, Almaty, Abay 10"

    def test_pickup_address(self, make_order):
        order = make_order(pickup=KaspiPickup(point_name="Postamat 12", address="Dostyk 5"))
        assert delivery_address(order) == "Postamat 12, Dostyk 5"

    def test_no_address(self, make_order):
        assert delivery_address(make_order()) is None


class TestNotes:
    """Test note templates."""

    def test_creation_note_fills_placeholders(self, make_order):
        note = creation_note(make_order(), "Kaspi items: {items}. Total: {total} KZT.")
        assert note == "Kaspi items: Phone case x 2 - 500 KZT. Total: 1000 KZT."

    def test_creation_note_appends_address(self, make_order):
        order = make_order(delivery=KaspiDelivery(city="Almaty", address="Abay 10"))
        note = creation_note(order, "Total: {total}")
        assert note == "Total: 1000\nAddress: Almaty, Abay 10"

    def test_creation_note_address_placeholder(self, make_order):
        order = make_order(delivery=KaspiDelivery(city="Almaty"))
        assert creation_note(order, "{total} to {address}") == "1000 to Almaty"

    def test_update_note_uses_local_time(self, make_order):
        at = datetime(2026, 10, 19, 20, 30, tzinfo=timezone.utc)
        note = update_note(make_order(state="DELIVERY"), "Asia/Tashkent", at)
        # UTC+5, no DST
        assert note.startswith("Updated by reconciliation 2026-10-20 01:30")
        assert "State: DELIVERY" in note
        assert "Total: 1000 KZT" in note


class TestLineItems:
    def test_line_items_round_price_and_carry_catalog(self, make_order):
        order = make_order(items=[KaspiItem(sku="A", name="Cable", quantity=3, price=199.6)])
        items = line_items(order, catalog_id=1001)
        assert len(items) == 1
        assert items[0].name == "Cable"
        assert items[0].quantity == 3
        assert items[0].price == 200
        assert items[0].catalog_id == 1001
        assert items[0].id is None

    def test_line_items_empty(self, make_order):
        assert line_items(make_order(items=[])) == []
