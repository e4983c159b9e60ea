from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Protocol

from order_engine.errors import StoreTimeout, TenantContextMissing
from order_engine.query import (
    TENANT_COLUMN,
    TENANT_SCOPED_RESOURCES,
    Count,
    Delete,
    Filter,
    Insert,
    Operation,
    Read,
    Update,
    Upsert,
    scope_filter,
)
from order_engine.tenant_context import current_tenant_id

logger = logging.getLogger(__name__)


class StoreBackend(Protocol):
    async def execute(self, op: Operation) -> Any: ...

    async def execute_atomic(self, ops: list[Operation]) -> list[Any]: ...


class TenantGuard:
    """Rewrites every operation on a tenant-scoped resource to the bound tenant."""

    def __init__(self, *, hardened: bool, scoped_resources: frozenset[str] = TENANT_SCOPED_RESOURCES) -> None:
        self.hardened = hardened
        self._scoped = scoped_resources

    def apply(self, op: Operation) -> Operation:
        if op.resource not in self._scoped:
            return op
        tenant_id = current_tenant_id()
        if not tenant_id:
            kind = type(op).__name__.lower()
            if self.hardened:
                raise TenantContextMissing(f"tenant context required for {kind} on {op.resource}")
            logger.warning("tenant_guard_unscoped_passthrough resource=%s op=%s", op.resource, kind)
            return op
        if isinstance(op, (Read, Count, Delete)):
            return replace(op, where=scope_filter(op.where, tenant_id))
        if isinstance(op, Update):
            values = dict(op.values)
            if TENANT_COLUMN in values:
                values[TENANT_COLUMN] = tenant_id
            return replace(op, where=scope_filter(op.where, tenant_id), values=values)
        if isinstance(op, Insert):
            return replace(op, rows=tuple({**row, TENANT_COLUMN: tenant_id} for row in op.rows))
        if isinstance(op, Upsert):
            return replace(op, row={**op.row, TENANT_COLUMN: tenant_id})
        raise TypeError(f"unsupported operation: {op!r}")


class GuardedStore:
    """The single data-access path for engine components."""

    def __init__(self, backend: StoreBackend, guard: TenantGuard, *, read_timeout_ms: int = 5000) -> None:
        self.backend = backend
        self.guard = guard
        self.read_timeout_ms = read_timeout_ms

    async def execute(self, op: Operation) -> Any:
        guarded = self.guard.apply(op)
        if isinstance(guarded, (Read, Count)):
            try:
                return await asyncio.wait_for(self.backend.execute(guarded), timeout=self.read_timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.warning("store_read_timeout resource=%s timeout_ms=%s", guarded.resource, self.read_timeout_ms)
                raise StoreTimeout(guarded.resource, self.read_timeout_ms) from None
        return await self.backend.execute(guarded)

    async def atomic(self, ops: list[Operation]) -> list[Any]:
        guarded = [self.guard.apply(op) for op in ops]
        return await self.backend.execute_atomic(guarded)

    async def find(
        self,
        resource: str,
        where: Filter | None = None,
        *,
        order_by: tuple[str, ...] = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return await self.execute(Read(resource=resource, where=dict(where or {}), order_by=order_by, limit=limit))

    async def find_one(self, resource: str, where: Filter) -> dict[str, Any] | None:
        rows = await self.find(resource, where, limit=1)
        return rows[0] if rows else None

    async def count(self, resource: str, where: Filter | None = None) -> int:
        return int(await self.execute(Count(resource=resource, where=dict(where or {}))))

    async def insert(self, resource: str, *rows: dict[str, Any]) -> list[dict[str, Any]]:
        return await self.execute(Insert(resource=resource, rows=tuple(rows)))

    async def upsert(self, resource: str, row: dict[str, Any], *, key: tuple[str, ...] = ("id",)) -> dict[str, Any]:
        return await self.execute(Upsert(resource=resource, row=row, key=key))

    async def update(
        self,
        resource: str,
        where: Filter,
        values: dict[str, Any],
        *,
        require_match: bool = False,
    ) -> int:
        return int(
            await self.execute(Update(resource=resource, where=where, values=values, require_match=require_match))
        )

    async def delete(self, resource: str, where: Filter) -> int:
        return int(await self.execute(Delete(resource=resource, where=where)))
