from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from order_engine.query import Update

MAX_UNIT_PRICE = 1_000_000


def item_total(quantity: int, unit_price: float, price_override: float | None = None) -> float:
    if price_override is not None:
        return round(float(price_override), 2)
    return round(int(quantity) * float(unit_price), 2)


def summarize_items(items: Iterable[dict[str, Any]], *, quick_drop_quantity: int = 0) -> dict[str, Any]:
    """Quick-drop bags count toward total items until itemised units catch up."""
    total_items = 0
    subtotal = 0.0
    for item in items:
        total_items += int(item.get("quantity") or 0)
        subtotal += float(item.get("total_price") or 0)
    subtotal = round(subtotal, 2)
    return {"total_items": max(total_items, int(quick_drop_quantity or 0)), "subtotal": subtotal, "total": subtotal}


def order_totals_update(order: dict[str, Any], items: Iterable[dict[str, Any]], *, now: str) -> Update:
    """Totals write for ``order`` that only lands if nobody bumped its row version meanwhile."""
    quick = int(order.get("quick_drop_quantity") or 0) if order.get("is_quick_drop") else 0
    return Update(
        resource="orders",
        where={"id": order["id"], "row_version": order["row_version"]},
        values={
            **summarize_items(items, quick_drop_quantity=quick),
            "row_version": int(order["row_version"]) + 1,
            "updated_at": now,
        },
        require_match=True,
    )
