from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any

from order_engine.db.schema import TABLES, _import_psycopg, _validate_identifier
from order_engine.query import (
    ConditionNotMet,
    Count,
    Delete,
    Filter,
    Insert,
    Operation,
    Read,
    Update,
    Upsert,
)
from order_engine.tenant_context import current_tenant_id

logger = logging.getLogger(__name__)


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with tenant session injection."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    async def run_in_tx(
        self,
        *,
        tenant_id: str | None,
        fn: Callable[[Any], Awaitable[Any]],
    ) -> Any:
        if tenant_id is not None and not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        conn = await psycopg.AsyncConnection.connect(self._dsn, row_factory=psycopg.rows.dict_row)
        async with conn:
            if tenant_id is not None:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            result = await fn(conn)
            await conn.commit()
            return result


def compile_filter(where: Filter, params: list[Any]) -> str:
    clauses: list[str] = []
    for key, value in where.items():
        if key == "AND":
            parts = [compile_filter(sub, params) for sub in value]
            clauses.append("(" + " AND ".join(parts) + ")" if parts else "TRUE")
        elif key == "OR":
            parts = [compile_filter(sub, params) for sub in value]
            clauses.append("(" + " OR ".join(parts) + ")" if parts else "FALSE")
        elif key == "NOT":
            clauses.append(f"NOT ({compile_filter(value, params)})")
        elif isinstance(value, dict):
            column = _validate_identifier(key)
            for op, operand in value.items():
                clauses.append(_compile_operator(column, op, operand, params))
        elif value is None:
            clauses.append(f"{_validate_identifier(key)} IS NULL")
        else:
            clauses.append(f"{_validate_identifier(key)} = %s")
            params.append(value)
    return " AND ".join(clauses) if clauses else "TRUE"


_COMPARATORS = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def _compile_operator(column: str, op: str, operand: Any, params: list[Any]) -> str:
    if op == "in":
        params.append(list(operand))
        return f"{column} = ANY(%s)"
    if op == "ne":
        params.append(operand)
        return f"{column} IS DISTINCT FROM %s"
    if op == "is_null":
        return f"{column} IS NULL" if operand else f"{column} IS NOT NULL"
    if op in _COMPARATORS:
        params.append(operand)
        return f"{column} {_COMPARATORS[op]} %s"
    raise ValueError(f"unsupported filter operator: {op}")


def _order_clause(order_by: tuple[str, ...]) -> str:
    if not order_by:
        return ""
    parts = []
    for spec in order_by:
        if spec.startswith("-"):
            parts.append(f"{_validate_identifier(spec[1:])} DESC NULLS LAST")
        else:
            parts.append(f"{_validate_identifier(spec)} ASC NULLS FIRST")
    return " ORDER BY " + ", ".join(parts)


def _normalize_row(row: dict[str, Any]) -> dict[str, Any]:
    return {key: float(value) if isinstance(value, Decimal) else value for key, value in row.items()}


class PostgresStoreBackend:
    """Compiles typed operations to parameterised SQL over one transaction per call."""

    def __init__(self, *, tx_runner: PostgresTxRunner) -> None:
        self._tx_runner = tx_runner

    def _adapt(self, resource: str, column: str, value: Any) -> Any:
        spec = TABLES.get(resource)
        if spec is not None and column in spec.json_columns and value is not None:
            return _import_psycopg().types.json.Jsonb(value)
        return value

    def compile(self, op: Operation) -> tuple[str, list[Any]]:
        table = _validate_identifier(op.resource)
        params: list[Any] = []
        if isinstance(op, Read):
            sql = f"SELECT * FROM {table} WHERE {compile_filter(op.where, params)}{_order_clause(op.order_by)}"
            if op.limit is not None:
                sql += " LIMIT %s"
                params.append(int(op.limit))
            return sql, params
        if isinstance(op, Count):
            return f"SELECT COUNT(*) AS n FROM {table} WHERE {compile_filter(op.where, params)}", params
        if isinstance(op, Update):
            assignments = []
            for column, value in op.values.items():
                assignments.append(f"{_validate_identifier(column)} = %s")
                params.append(self._adapt(op.resource, column, value))
            where_sql = compile_filter(op.where, params)
            return f"UPDATE {table} SET {', '.join(assignments)} WHERE {where_sql}", params
        if isinstance(op, Delete):
            return f"DELETE FROM {table} WHERE {compile_filter(op.where, params)}", params
        if isinstance(op, Upsert):
            columns = [_validate_identifier(c) for c in op.row]
            key = [_validate_identifier(c) for c in op.key]
            params.extend(self._adapt(op.resource, c, op.row[c]) for c in op.row)
            updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in key)
            return (
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))}) "
                f"ON CONFLICT ({', '.join(key)}) DO UPDATE SET {updates} RETURNING *"
            ), params
        raise TypeError(f"unsupported operation: {op!r}")

    def _insert_sql(self, resource: str, row: dict[str, Any]) -> tuple[str, list[Any]]:
        table = _validate_identifier(resource)
        columns = [_validate_identifier(c) for c in row]
        params = [self._adapt(resource, c, row[c]) for c in row]
        placeholders = ", ".join(["%s"] * len(columns))
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *", params

    async def _run(self, conn: Any, op: Operation) -> Any:
        psycopg = _import_psycopg()
        async with conn.cursor() as cur:
            if isinstance(op, Insert):
                inserted: list[dict[str, Any]] = []
                for row in op.rows:
                    sql, params = self._insert_sql(op.resource, row)
                    try:
                        await cur.execute(sql, params)
                    except psycopg.errors.UniqueViolation as exc:
                        raise ConditionNotMet(op.resource, f"duplicate key: {row.get('id')}") from exc
                    inserted.append(_normalize_row(await cur.fetchone()))
                return inserted
            sql, params = self.compile(op)
            await cur.execute(sql, params)
            if isinstance(op, Read):
                return [_normalize_row(row) for row in await cur.fetchall()]
            if isinstance(op, Count):
                row = await cur.fetchone()
                return int(row["n"]) if row else 0
            if isinstance(op, Upsert):
                return _normalize_row(await cur.fetchone())
            affected = int(cur.rowcount or 0)
            if isinstance(op, Update) and op.require_match and affected == 0:
                raise ConditionNotMet(op.resource, "conditional update matched no rows")
            return affected

    async def execute(self, op: Operation) -> Any:
        async def _op(conn: Any) -> Any:
            return await self._run(conn, op)

        return await self._tx_runner.run_in_tx(tenant_id=current_tenant_id(), fn=_op)

    async def execute_atomic(self, ops: list[Operation]) -> list[Any]:
        async def _op(conn: Any) -> list[Any]:
            return [await self._run(conn, op) for op in ops]

        try:
            return await self._tx_runner.run_in_tx(tenant_id=current_tenant_id(), fn=_op)
        except ConditionNotMet:
            logger.warning("postgres_atomic_batch_rolled_back ops=%s", len(ops))
            raise
