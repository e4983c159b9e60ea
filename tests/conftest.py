import asyncio
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from order_engine.engine import OrderEngine, engine as default_engine
from order_engine.main import create_app
from order_engine.settings import EngineSettings
from order_engine.store_backends import InMemoryStoreBackend
from order_engine.tenant_context import bind_tenant

JWT_SECRET = "jwt_test_secret"


def issue_token(*, tenant_id: str, role: str = "operator", secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"user_{tenant_id}",
        "tenant_org_id": tenant_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient):
        self._client = client

    def request(self, method: str, url: str, *, role: str = "operator", **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            tenant_id = headers.get("x-tenant-id") or "tenant_default"
            headers["Authorization"] = f"Bearer {issue_token(tenant_id=str(tenant_id), role=role)}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_engine(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.delenv("JWT_REQUIRED_CLAIMS", raising=False)
    monkeypatch.delenv("JWT_TENANT_CLAIM", raising=False)
    monkeypatch.delenv("TRACE_ID_STRICT_REQUIRED", raising=False)
    default_engine.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    return AuthenticatedClient(TestClient(create_app()))


def _make_engine(*, environment: str = "production", latency_s: float = 0.0, **env: str) -> OrderEngine:
    settings = EngineSettings.from_env({"ORDER_ENGINE_ENV": environment, **env})
    return OrderEngine(settings, backend=InMemoryStoreBackend(latency_s=latency_s))


@pytest.fixture
def make_engine():
    return _make_engine


@pytest.fixture
def engine() -> OrderEngine:
    return _make_engine()


def _run_as(tenant_id: str, coro_fn, *, role: str = "operator", user_id: str = "tester"):
    """Run ``coro_fn()`` on a fresh event loop with ``tenant_id`` bound."""

    async def _main():
        with bind_tenant(tenant_id, user_id=user_id, role=role):
            return await coro_fn()

    return asyncio.run(_main())


@pytest.fixture
def run_as():
    return _run_as


async def _enable_piece_tracking(engine: OrderEngine) -> None:
    from order_engine.tenant_context import current_context

    ctx = current_context()
    with bind_tenant(ctx.tenant_id, user_id=ctx.user_id, role="tenant_admin"):
        await engine.tenant_settings.update({"track_individual_piece": True})
    ctx.cache.clear()


@pytest.fixture
def enable_piece_tracking():
    return _enable_piece_tracking


@pytest.fixture
def token_factory():
    return issue_token
