def _order_payload() -> dict:
    return {
        "customer_id": "cus_idem",
        "items": [{"product_name": "Shirt", "quantity": 2, "unit_price": 3.5}],
        "priority": "normal",
    }


def test_missing_idempotency_key_creates_a_new_order_each_time(client):
    first = client.post("/api/v1/orders", json=_order_payload())
    second = client.post("/api/v1/orders", json=_order_payload())
    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["data"]["id"] != second.json()["data"]["id"]


def test_same_key_same_body_returns_same_response(client):
    headers = {"Idempotency-Key": "idem_order_1"}

    first = client.post("/api/v1/orders", json=_order_payload(), headers=headers)
    second = client.post("/api/v1/orders", json=_order_payload(), headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["data"] == second.json()["data"]
    listed = client.get("/api/v1/orders")
    assert listed.json()["data"]["total"] == 1


def test_same_key_different_body_returns_409(client):
    headers = {"Idempotency-Key": "idem_order_2"}
    payload_diff = _order_payload()
    payload_diff["priority"] = "express"

    first = client.post("/api/v1/orders", json=_order_payload(), headers=headers)
    second = client.post("/api/v1/orders", json=payload_diff, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"


def test_idempotency_keys_are_scoped_per_tenant(client):
    headers_a = {"Idempotency-Key": "idem_shared", "x-tenant-id": "tenant_a"}
    headers_b = {"Idempotency-Key": "idem_shared", "x-tenant-id": "tenant_b"}

    first = client.post("/api/v1/orders", json=_order_payload(), headers=headers_a)
    second = client.post("/api/v1/orders", json=_order_payload(), headers=headers_b)

    assert second.status_code == 201
    assert first.json()["data"]["id"] != second.json()["data"]["id"]
