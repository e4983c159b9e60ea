"""Request-scoped tenant binding.

The active tenant lives in a ``ContextVar`` so that each request (and every
task it spawns) sees its own binding while many requests interleave on the
same event loop.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from order_engine.errors import TenantContextMissing

ADMIN_ROLES = frozenset({"admin", "tenant_admin"})


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: str = "system"
    role: str = "operator"
    cache: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


_current: ContextVar[TenantContext | None] = ContextVar("order_engine_tenant", default=None)


def current_context() -> TenantContext | None:
    return _current.get()


def current_tenant_id() -> str | None:
    ctx = _current.get()
    return ctx.tenant_id if ctx is not None else None


def current_actor() -> str:
    ctx = _current.get()
    return ctx.user_id if ctx is not None else "system"


def require_context() -> TenantContext:
    ctx = _current.get()
    if ctx is None:
        raise TenantContextMissing()
    return ctx


@contextmanager
def bind_tenant(tenant_id: str, *, user_id: str = "system", role: str = "operator") -> Iterator[TenantContext]:
    if not tenant_id or not tenant_id.strip():
        raise ValueError("tenant_id must not be empty")
    ctx = TenantContext(tenant_id=tenant_id.strip(), user_id=user_id or "system", role=role or "operator")
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)
