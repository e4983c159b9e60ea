from __future__ import annotations

import asyncio
import copy
import logging
import threading
from typing import Any

from order_engine.db.postgres import PostgresStoreBackend, PostgresTxRunner
from order_engine.db.rls import PostgresRlsManager
from order_engine.query import (
    TENANT_COLUMN,
    ConditionNotMet,
    Count,
    Delete,
    Insert,
    Operation,
    Read,
    Update,
    Upsert,
    matches,
    sort_rows,
)
from order_engine.settings import EngineSettings

logger = logging.getLogger(__name__)


class InMemoryStoreBackend:
    """Dict-of-tables store; every call yields to the event loop before touching data."""

    def __init__(self, *, latency_s: float = 0.0) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self.latency_s = latency_s

    def reset(self) -> None:
        with self._lock:
            self._tables.clear()

    def rows(self, resource: str) -> list[dict[str, Any]]:
        """Unscoped snapshot of one table, for tests and operator tooling."""
        with self._lock:
            return [dict(row) for row in self._tables.get(resource, {}).values()]

    async def execute(self, op: Operation) -> Any:
        await asyncio.sleep(self.latency_s)
        with self._lock:
            return self._apply(op)

    async def execute_atomic(self, ops: list[Operation]) -> list[Any]:
        await asyncio.sleep(self.latency_s)
        with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                return [self._apply(op) for op in ops]
            except Exception:
                self._tables = snapshot
                raise

    def _table(self, resource: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(resource, {})

    def _apply(self, op: Operation) -> Any:
        table = self._table(op.resource)
        if isinstance(op, Read):
            found = [copy.deepcopy(row) for row in table.values() if matches(row, op.where)]
            found = sort_rows(found, op.order_by)
            return found[: op.limit] if op.limit is not None else found
        if isinstance(op, Count):
            return sum(1 for row in table.values() if matches(row, op.where))
        if isinstance(op, Insert):
            inserted = []
            for row in op.rows:
                row_id = row.get("id")
                if not row_id:
                    raise ValueError(f"insert into {op.resource} requires an id")
                if row_id in table:
                    raise ConditionNotMet(op.resource, f"duplicate key: {row_id}")
                table[row_id] = copy.deepcopy(row)
                inserted.append(copy.deepcopy(row))
            return inserted
        if isinstance(op, Upsert):
            return self._upsert(table, op)
        if isinstance(op, Update):
            hits = [row for row in table.values() if matches(row, op.where)]
            if op.require_match and not hits:
                raise ConditionNotMet(op.resource, "conditional update matched no rows")
            for row in hits:
                row.update(copy.deepcopy(op.values))
            return len(hits)
        if isinstance(op, Delete):
            doomed = [key for key, row in table.items() if matches(row, op.where)]
            for key in doomed:
                del table[key]
            return len(doomed)
        raise TypeError(f"unsupported operation: {op!r}")

    def _upsert(self, table: dict[str, dict[str, Any]], op: Upsert) -> dict[str, Any]:
        existing = next(
            (row for row in table.values() if all(row.get(col) == op.row.get(col) for col in op.key)),
            None,
        )
        if existing is None:
            row_id = op.row.get("id")
            if not row_id:
                raise ValueError(f"upsert into {op.resource} requires an id")
            table[row_id] = copy.deepcopy(op.row)
            return copy.deepcopy(op.row)
        if TENANT_COLUMN in op.row and existing.get(TENANT_COLUMN) != op.row[TENANT_COLUMN]:
            raise ConditionNotMet(op.resource, "key owned by another tenant")
        existing.update(copy.deepcopy(op.row))
        return copy.deepcopy(existing)


def create_store_backend(settings: EngineSettings) -> InMemoryStoreBackend | PostgresStoreBackend:
    if settings.store_backend == "memory":
        return InMemoryStoreBackend()
    if not settings.postgres_dsn:
        raise RuntimeError("POSTGRES_DSN is required when ORDER_ENGINE_STORE_BACKEND=postgres")
    if settings.postgres_apply_rls:
        tables = PostgresRlsManager(settings.postgres_dsn).apply()
        logger.info("postgres_rls_applied tables=%s", len(tables))
    return PostgresStoreBackend(tx_runner=PostgresTxRunner(settings.postgres_dsn))
