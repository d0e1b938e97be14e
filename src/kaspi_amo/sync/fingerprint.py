"""Order fingerprint: a change detector over an order's mutable content.

The digest covers total price, state and the (sku, quantity, price)
multiset of line items. Keys are sorted, items are sorted and integral
floats are written as ints, so payloads that differ only in ordering or
in ``1000`` vs ``1000.0`` hash identically.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from src.kaspi_amo.sync.schemas import KaspiOrder


def _canonical_number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def canonical_projection(order: KaspiOrder) -> dict[str, Any]:
    items = sorted(
        (
            {
                "sku": item.sku,
                "quantity": _canonical_number(item.quantity),
                "price": _canonical_number(item.price),
            }
            for item in order.items
        ),
        key=lambda i: (i["sku"], i["quantity"], i["price"]),
    )
    return {
        "totalPrice": _canonical_number(order.total_price),
        "state": order.state,
        "items": items,
    }


def compute_fingerprint(order: KaspiOrder) -> str:
    """MD5 hex digest of the canonical projection of ``order``."""
    payload = json.dumps(
        canonical_projection(order),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.md5(payload.encode("utf-8")).hexdigest()
