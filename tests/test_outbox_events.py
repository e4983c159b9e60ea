from __future__ import annotations

import pytest

from order_engine.errors import NotFound
from order_engine.outbox import outbox_event


def test_outbox_event_rejects_unknown_types():
    with pytest.raises(ValueError, match="unknown outbox event type"):
        outbox_event(event_type="order.teleported", aggregate_type="order", aggregate_id="o1", payload={})


def test_create_order_adds_pending_outbox_event(engine, run_as):
    async def _main():
        order = await engine.create_order(
            customer_id="cus_outbox", items=[{"product_name": "Shirt", "quantity": 1, "unit_price": 2}]
        )
        return order, await engine.outbox.list_events(status="pending")

    order, events = run_as("tenant_outbox", _main)
    latest = events[-1]
    assert latest["event_type"] == "order.created"
    assert latest["aggregate_id"] == order["id"]
    assert latest["payload"]["order_no"] == order["order_no"]
    assert latest["status"] == "pending"
    assert latest["tenant_org_id"] == "tenant_outbox"


def test_mark_outbox_event_published(engine, run_as):
    async def _main():
        await engine.create_order(customer_id="cus_outbox", items=[{"product_name": "Shirt", "quantity": 1}])
        event = (await engine.outbox.list_events())[-1]
        published = await engine.outbox.mark_published(event["id"])
        pending = await engine.outbox.list_events(status="pending")
        return published, pending

    published, pending = run_as("tenant_outbox", _main)
    assert published["status"] == "published"
    assert published["published_at"] is not None
    assert pending == []


def test_outbox_events_are_tenant_scoped(engine, run_as):
    run_as("tenant_a", lambda: engine.create_order(customer_id="c", items=[{"product_name": "Sock", "quantity": 1}]))
    event = run_as("tenant_a", engine.outbox.list_events)[-1]

    assert run_as("tenant_b", engine.outbox.list_events) == []
    with pytest.raises(NotFound):
        run_as("tenant_b", lambda: engine.outbox.mark_published(event["id"]))


def test_outbox_api_lists_and_publishes(client):
    headers = {"x-tenant-id": "tenant_api"}
    client.post(
        "/api/v1/orders",
        json={"customer_id": "cus_1", "items": [{"product_name": "Shirt", "quantity": 1, "unit_price": 2}]},
        headers=headers,
    )
    listed = client.get("/api/v1/outbox/events?status=pending", headers=headers)
    assert listed.status_code == 200
    event = listed.json()["data"]["items"][0]

    published = client.post(f"/api/v1/outbox/events/{event['id']}/publish", headers=headers)
    assert published.status_code == 200
    assert published.json()["data"]["status"] == "published"

    missing = client.post("/api/v1/outbox/events/evt_missing/publish", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "OUTBOX_EVENT_NOT_FOUND"
