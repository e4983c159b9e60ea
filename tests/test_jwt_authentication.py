from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from order_engine.main import create_app


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _build_hs256_token(*, secret: str, claims: dict[str, object], alg: str = "HS256") -> str:
    header = {"alg": alg, "typ": "JWT"}
    header_raw = _b64url(json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    payload_raw = _b64url(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_raw}.{payload_raw}".encode("ascii")
    signature = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{header_raw}.{payload_raw}.{_b64url(signature)}"


def _auth_client(monkeypatch) -> tuple[TestClient, str]:
    shared_key = "jwt_test_key_material"
    monkeypatch.setenv("JWT_ISSUER", "laundry.test")
    monkeypatch.setenv("JWT_AUDIENCE", "laundry.api")
    monkeypatch.setenv("JWT_SHARED_SECRET", shared_key)
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "tenant_org_id,sub,exp")
    return TestClient(create_app()), shared_key


def _token_for(
    *,
    secret: str,
    tenant_id: str,
    ttl_minutes: int = 15,
    extra: dict[str, object] | None = None,
) -> str:
    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "iss": "laundry.test",
        "aud": "laundry.api",
        "sub": f"user_{tenant_id}",
        "tenant_org_id": tenant_id,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
    }
    if extra:
        claims.update(extra)
    return _build_hs256_token(secret=secret, claims=claims)


def _order_payload() -> dict:
    return {"customer_id": "cus_jwt", "items": [{"product_name": "Shirt", "quantity": 1, "unit_price": 3}]}


def test_jwt_required_rejects_missing_authorization(monkeypatch):
    client, _secret = _auth_client(monkeypatch)
    resp = client.get("/api/v1/orders")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_jwt_rejects_expired_token(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    token = _token_for(secret=secret, tenant_id="tenant_a", ttl_minutes=-1)
    resp = client.get("/api/v1/orders", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "token expired"


def test_jwt_rejects_bad_signature_and_audience(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    forged = _token_for(secret="someone_elses_key", tenant_id="tenant_a")
    wrong_audience = _token_for(secret=secret, tenant_id="tenant_a", extra={"aud": "other.api"})

    for token in (forged, wrong_audience):
        resp = client.get("/api/v1/orders", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_jwt_rejects_missing_required_claim(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    now = datetime.now(UTC)
    token = _build_hs256_token(
        secret=secret,
        claims={
            "iss": "laundry.test",
            "aud": "laundry.api",
            "sub": "user_a",
            "exp": int((now + timedelta(minutes=10)).timestamp()),
        },
    )
    resp = client.get("/api/v1/orders", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_jwt_blocks_tenant_header_spoofing(monkeypatch, caplog):
    client, secret = _auth_client(monkeypatch)
    token = _token_for(secret=secret, tenant_id="tenant_a")
    with caplog.at_level("WARNING", logger="order_engine.security"):
        resp = client.get(
            "/api/v1/orders",
            headers={"Authorization": f"Bearer {token}", "x-tenant-id": "tenant_b"},
        )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "TENANT_SCOPE_VIOLATION"
    assert "security_blocked code=TENANT_SCOPE_VIOLATION" in caplog.text
    assert token not in caplog.text


def test_jwt_injects_tenant_context_for_resource_access(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    token_a = _token_for(secret=secret, tenant_id="tenant_a")
    token_b = _token_for(secret=secret, tenant_id="tenant_b")

    created = client.post("/api/v1/orders", headers={"Authorization": f"Bearer {token_a}"}, json=_order_payload())
    assert created.status_code == 201
    order = created.json()["data"]
    assert order["created_by"] == "user_tenant_a"

    own = client.get(f"/api/v1/orders/{order['id']}", headers={"Authorization": f"Bearer {token_a}"})
    assert own.status_code == 200

    cross = client.get(f"/api/v1/orders/{order['id']}", headers={"Authorization": f"Bearer {token_b}"})
    assert cross.status_code == 404
    assert cross.json()["error"]["code"] == "ORDER_NOT_FOUND"


def test_jwt_role_claim_gates_admin_settings(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    operator = _token_for(secret=secret, tenant_id="tenant_a", extra={"role": "operator"})
    admin = _token_for(secret=secret, tenant_id="tenant_a", extra={"role": "tenant_admin"})

    denied = client.put(
        "/api/v1/settings/tenant",
        headers={"Authorization": f"Bearer {operator}"},
        json={"orders_split_enabled": False},
    )
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "AUTH_FORBIDDEN"

    allowed = client.put(
        "/api/v1/settings/tenant",
        headers={"Authorization": f"Bearer {admin}"},
        json={"orders_split_enabled": False},
    )
    assert allowed.status_code == 200
    assert allowed.json()["data"]["orders_split_enabled"] is False
