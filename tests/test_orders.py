from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from order_engine.errors import Forbidden, ValidationError
from order_engine.orders import format_order_no, initial_status
from order_engine.tenant_context import bind_tenant

RECEIVED = datetime(2025, 10, 30, 10, 0, tzinfo=UTC)
ITEMS = [{"product_name": "Shirt", "quantity": 2, "unit_price": 3.5}]


def test_order_numbers_are_sequential_per_tenant_and_day(engine, run_as):
    async def _two():
        first = await engine.create_order(customer_id="cus_1", items=ITEMS, received_at=RECEIVED)
        second = await engine.create_order(customer_id="cus_2", items=ITEMS, received_at=RECEIVED)
        next_day = await engine.create_order(
            customer_id="cus_3", items=ITEMS, received_at=RECEIVED + timedelta(days=1)
        )
        return first, second, next_day

    first, second, next_day = run_as("tenant_a", _two)
    other = run_as("tenant_b", lambda: engine.create_order(customer_id="cus_1", items=ITEMS, received_at=RECEIVED))

    assert first["order_no"] == "ORD-20251030-0001"
    assert second["order_no"] == "ORD-20251030-0002"
    assert next_day["order_no"] == "ORD-20251031-0001"
    assert other["order_no"] == "ORD-20251030-0001"
    assert format_order_no(RECEIVED.date(), 12) == "ORD-20251030-0012"


def test_created_order_carries_totals_schedule_and_history(engine, run_as):
    async def _main():
        order = await engine.create_order(customer_id=" cus_1 ", items=ITEMS, received_at=RECEIVED, notes="walk-in")
        history = await engine.state_machine.status_history(order["id"])
        return order, history

    order, history = run_as("tenant_a", _main)

    assert order["customer_id"] == "cus_1"
    assert order["current_status"] == "intake"
    assert order["total_items"] == 2
    assert order["subtotal"] == 7.0
    assert order["ready_by"] == datetime(2025, 11, 1, 10, 0, tzinfo=UTC).isoformat()
    assert order["row_version"] == 1
    assert order["created_by"] == "tester"
    assert [(h["seq"], h["from_status"], h["to_status"], h["notes"]) for h in history] == [
        (1, None, "intake", "walk-in")
    ]


def test_naive_received_at_is_taken_as_utc(engine, run_as):
    order = run_as(
        "tenant_a",
        lambda: engine.create_order(customer_id="cus_1", items=ITEMS, received_at=datetime(2025, 10, 30, 10, 0)),
    )
    assert order["received_at"] == RECEIVED.isoformat()


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"as_draft": True, "quick_drop": False, "quick_drop_quantity": 0, "itemised_units": 2}, "draft"),
        ({"as_draft": False, "quick_drop": True, "quick_drop_quantity": 3, "itemised_units": 0}, "preparation"),
        ({"as_draft": False, "quick_drop": True, "quick_drop_quantity": 3, "itemised_units": 3}, "intake"),
        ({"as_draft": False, "quick_drop": False, "quick_drop_quantity": 0, "itemised_units": 1}, "intake"),
    ],
)
def test_initial_status(kwargs, expected):
    assert initial_status(**kwargs) == expected


def test_quick_drop_and_draft_orders(engine, run_as):
    async def _main():
        quick = await engine.create_order(customer_id="cus_1", quick_drop=True, quick_drop_quantity=3)
        draft = await engine.create_order(customer_id="cus_1", items=ITEMS, as_draft=True)
        return quick, draft

    quick, draft = run_as("tenant_a", _main)
    assert quick["current_status"] == "preparation"
    assert quick["order_subtype"] == "quick_drop"
    assert quick["total_items"] == 3
    assert quick["items"] == []
    assert draft["current_status"] == "draft"


def test_invalid_order_reports_every_error(engine, run_as):
    with pytest.raises(ValidationError) as exc_info:
        run_as(
            "tenant_a",
            lambda: engine.create_order(
                customer_id="",
                priority="asap",
                items=[
                    {"quantity": 0, "unit_price": -1},
                    {"product_name": "Rug", "quantity": 1, "price_override": 5.0, "has_stain": True},
                ],
            ),
        )
    errors = exc_info.value.errors
    assert "customer_id is required" in errors
    assert any(error.startswith("priority must be one of") for error in errors)
    assert any(error.startswith("item 0: product_id or product_name") for error in errors)
    assert any(error.startswith("item 0: quantity") for error in errors)
    assert any(error.startswith("item 0: unit_price") for error in errors)
    assert "item 1: price_override requires price_override_reason" in errors
    assert "item 1: has_stain requires stain_notes" in errors
    assert exc_info.value.details == {"errors": errors}


def test_order_without_items_needs_quick_drop(engine, run_as):
    with pytest.raises(ValidationError, match="at least one item"):
        run_as("tenant_a", lambda: engine.create_order(customer_id="cus_1"))


def test_change_priority_recomputes_ready_by(engine, run_as):
    async def _main():
        order = await engine.create_order(customer_id="cus_1", items=ITEMS, received_at=RECEIVED)
        express = await engine.orders.change_priority(order["id"], "express")
        unchanged = await engine.orders.change_priority(order["id"], "express")
        pinned = await engine.create_order(
            customer_id="cus_1",
            items=ITEMS,
            received_at=RECEIVED,
            ready_by_override=datetime(2025, 11, 9, 12, 0),
        )
        pinned_after = await engine.orders.change_priority(pinned["id"], "urgent")
        actions = await engine.orders.order_history(order["id"])
        return express, unchanged, pinned, pinned_after, actions

    express, unchanged, pinned, pinned_after, actions = run_as("tenant_a", _main)

    assert express["ready_by"] == datetime(2025, 10, 31, 10, 0, tzinfo=UTC).isoformat()
    assert express["row_version"] == 2
    assert unchanged["row_version"] == 2
    assert pinned["ready_by"] == datetime(2025, 11, 9, 12, 0, tzinfo=UTC).isoformat()
    assert pinned_after["ready_by"] == pinned["ready_by"]
    assert [a["action_type"] for a in actions] == ["ORDER_CREATED", "PRIORITY_CHANGE"]
    assert actions[1]["from_value"] == "normal"


def test_change_priority_rejects_unknown_priority(engine, run_as):
    async def _main():
        order = await engine.create_order(customer_id="cus_1", items=ITEMS)
        await engine.orders.change_priority(order["id"], "yesterday")

    with pytest.raises(ValidationError, match="priority"):
        run_as("tenant_a", _main)


def test_category_turnaround_from_tenant_settings(engine, run_as):
    async def _main():
        await engine.tenant_settings.update({"category_turnaround_hours": {"dry_clean": 24}})
        return await engine.create_order(
            customer_id="cus_1", items=ITEMS, received_at=RECEIVED, service_category_code="dry_clean"
        )

    order = run_as("tenant_a", _main, role="tenant_admin")
    assert order["ready_by"] == datetime(2025, 10, 31, 10, 0, tzinfo=UTC).isoformat()


def test_list_overdue_skips_completed_and_future_orders(engine, run_as):
    async def _main():
        late = await engine.create_order(customer_id="cus_1", items=ITEMS, received_at=RECEIVED)
        cancelled = await engine.create_order(customer_id="cus_2", items=ITEMS, received_at=RECEIVED)
        await engine.transition_order(cancelled["id"], "cancelled")
        await engine.create_order(customer_id="cus_3", items=ITEMS, received_at=RECEIVED + timedelta(days=30))
        overdue = await engine.orders.list_overdue(now=RECEIVED + timedelta(days=5))
        return late, overdue

    late, overdue = run_as("tenant_a", _main)
    assert [order["id"] for order in overdue] == [late["id"]]


def test_update_item_quantity_refreshes_totals(engine, run_as):
    async def _main():
        order = await engine.create_order(customer_id="cus_1", items=ITEMS)
        item = await engine.orders.update_item_quantity(order["items"][0]["id"], 4)
        refreshed = await engine.orders.get_order(order["id"])
        return item, refreshed

    item, refreshed = run_as("tenant_a", _main)
    assert item["quantity"] == 4
    assert item["total_price"] == 14.0
    assert refreshed["total_items"] == 4
    assert refreshed["subtotal"] == 14.0


def test_tenant_settings_are_admin_only_and_validated(engine, run_as):
    with pytest.raises(Forbidden):
        run_as("tenant_a", lambda: engine.tenant_settings.update({"orders_split_enabled": False}))

    with pytest.raises(ValidationError) as exc_info:
        run_as(
            "tenant_a",
            lambda: engine.tenant_settings.update({"colour": "blue", "default_turnaround_hours": -1}),
            role="tenant_admin",
        )
    assert exc_info.value.errors == [
        "unknown setting: colour",
        "default_turnaround_hours must be a non-negative number",
    ]

    async def _update():
        saved = await engine.tenant_settings.update(
            {"default_turnaround_hours": 24, "business_hours": {"open_hour": 8, "close_hour": 20}}
        )
        return saved, await engine.tenant_settings.get()

    saved, loaded = run_as("tenant_a", _update, role="admin")
    assert saved == loaded
    assert loaded["business_hours"]["open_hour"] == 8
    assert run_as("tenant_b", engine.tenant_settings.get)["default_turnaround_hours"] == 48.0


def test_concurrent_quantity_updates_keep_order_totals(make_engine):
    engine = make_engine(latency_s=0.002)

    async def _main():
        with bind_tenant("tenant_a", user_id="clerk"):
            order = await engine.create_order(
                customer_id="cus_1",
                items=[
                    {"product_name": "Shirt", "quantity": 1, "unit_price": 3.5},
                    {"product_name": "Scarf", "quantity": 1, "unit_price": 1.0},
                ],
            )
            first, second = (item["id"] for item in order["items"])
            await asyncio.gather(
                engine.orders.update_item_quantity(first, 4),
                engine.orders.update_item_quantity(second, 7),
            )
            return await engine.orders.get_order(order["id"])

    refreshed = asyncio.run(_main())
    assert sorted(item["quantity"] for item in refreshed["items"]) == [4, 7]
    assert refreshed["total_items"] == 11
    assert refreshed["subtotal"] == 21.0
