from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
        import psycopg.rows  # type: ignore  # noqa: F401
        import psycopg.types.json  # type: ignore  # noqa: F401
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: tuple[tuple[str, str], ...]
    json_columns: frozenset[str] = frozenset()
    constraints: tuple[str, ...] = ()
    indexes: tuple[str, ...] = field(default_factory=tuple)

    def ddl(self) -> list[str]:
        table = _validate_identifier(self.name)
        body = [f"{_validate_identifier(col)} {sql_type}" for col, sql_type in self.columns]
        body.extend(self.constraints)
        statements = [f"CREATE TABLE IF NOT EXISTS {table} (\n  " + ",\n  ".join(body) + "\n)"]
        for index_cols in self.indexes:
            cols = [_validate_identifier(c.strip()) for c in index_cols.split(",")]
            index_name = f"{table}_{'_'.join(cols)}_idx"
            statements.append(f"CREATE INDEX IF NOT EXISTS {index_name} ON {table} ({', '.join(cols)})")
        return statements


_TENANT = ("tenant_org_id", "TEXT NOT NULL")

TABLES: dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec(
            name="orders",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_no", "TEXT NOT NULL"),
                ("customer_id", "TEXT NOT NULL"),
                ("parent_order_id", "TEXT"),
                ("order_subtype", "TEXT NOT NULL DEFAULT 'standard'"),
                ("service_category_code", "TEXT"),
                ("current_status", "TEXT NOT NULL"),
                ("current_stage", "TEXT NOT NULL"),
                ("priority", "TEXT NOT NULL DEFAULT 'normal'"),
                ("is_quick_drop", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("quick_drop_quantity", "INTEGER NOT NULL DEFAULT 0"),
                ("total_items", "INTEGER NOT NULL DEFAULT 0"),
                ("subtotal", "NUMERIC(14, 2) NOT NULL DEFAULT 0"),
                ("total", "NUMERIC(14, 2) NOT NULL DEFAULT 0"),
                ("received_at", "TEXT NOT NULL"),
                ("ready_by", "TEXT"),
                ("ready_by_override", "TEXT"),
                ("ready_at", "TEXT"),
                ("rack_location", "TEXT"),
                ("qa_status", "TEXT"),
                ("has_issue", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("is_rejected", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("has_split", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("split_count", "INTEGER NOT NULL DEFAULT 0"),
                ("row_version", "INTEGER NOT NULL DEFAULT 1"),
                ("created_by", "TEXT"),
                ("created_at", "TEXT NOT NULL"),
                ("updated_at", "TEXT NOT NULL"),
            ),
            constraints=("UNIQUE (tenant_org_id, order_no)",),
            indexes=("tenant_org_id, current_status", "parent_order_id"),
        ),
        TableSpec(
            name="order_items",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_id", "TEXT NOT NULL"),
                ("product_id", "TEXT"),
                ("product_name", "TEXT"),
                ("quantity", "INTEGER NOT NULL"),
                ("unit_price", "NUMERIC(14, 2) NOT NULL DEFAULT 0"),
                ("total_price", "NUMERIC(14, 2) NOT NULL DEFAULT 0"),
                ("price_override", "NUMERIC(14, 2)"),
                ("price_override_reason", "TEXT"),
                ("has_stain", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("stain_notes", "TEXT"),
                ("has_damage", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("damage_notes", "TEXT"),
                ("item_status", "TEXT NOT NULL DEFAULT 'intake'"),
                ("last_step", "TEXT"),
                ("last_step_seq", "INTEGER NOT NULL DEFAULT 0"),
                ("issue_id", "TEXT"),
                ("pieces_version", "INTEGER NOT NULL DEFAULT 0"),
                ("created_at", "TEXT NOT NULL"),
                ("updated_at", "TEXT NOT NULL"),
            ),
            indexes=("order_id",),
        ),
        TableSpec(
            name="order_item_pieces",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_id", "TEXT NOT NULL"),
                ("order_item_id", "TEXT NOT NULL"),
                ("piece_seq", "INTEGER NOT NULL CHECK (piece_seq >= 1)"),
                ("barcode", "TEXT"),
                ("piece_status", "TEXT NOT NULL DEFAULT 'intake'"),
                ("rack_location", "TEXT"),
                ("is_rejected", "BOOLEAN NOT NULL DEFAULT FALSE"),
                ("notes", "TEXT"),
                ("created_at", "TEXT NOT NULL"),
                ("updated_at", "TEXT NOT NULL"),
            ),
            # Re-sequencing rewrites several rows in one transaction.
            constraints=("UNIQUE (order_item_id, piece_seq) DEFERRABLE INITIALLY DEFERRED",),
            indexes=("order_id",),
        ),
        TableSpec(
            name="processing_steps",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_id", "TEXT NOT NULL"),
                ("order_item_id", "TEXT NOT NULL"),
                ("step_code", "TEXT NOT NULL"),
                ("step_seq", "INTEGER NOT NULL CHECK (step_seq BETWEEN 1 AND 5)"),
                ("done_by", "TEXT"),
                ("done_at", "TEXT NOT NULL"),
                ("notes", "TEXT"),
            ),
            constraints=("UNIQUE (order_item_id, step_seq)",),
            indexes=("order_id",),
        ),
        TableSpec(
            name="order_issues",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_id", "TEXT NOT NULL"),
                ("order_item_id", "TEXT NOT NULL"),
                ("issue_code", "TEXT NOT NULL"),
                ("issue_text", "TEXT NOT NULL"),
                ("priority", "TEXT NOT NULL DEFAULT 'normal'"),
                ("photo_url", "TEXT"),
                ("created_by", "TEXT"),
                ("created_at", "TEXT NOT NULL"),
                ("solved_at", "TEXT"),
                ("solved_by", "TEXT"),
                ("solved_notes", "TEXT"),
            ),
            indexes=("order_id",),
        ),
        TableSpec(
            name="status_history",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_id", "TEXT NOT NULL"),
                ("seq", "INTEGER NOT NULL"),
                ("from_status", "TEXT"),
                ("to_status", "TEXT NOT NULL"),
                ("changed_by", "TEXT"),
                ("changed_at", "TEXT NOT NULL"),
                ("notes", "TEXT"),
                ("metadata", "JSONB NOT NULL DEFAULT '{}'::jsonb"),
            ),
            json_columns=frozenset({"metadata"}),
            constraints=("UNIQUE (order_id, seq)",),
        ),
        TableSpec(
            name="order_history",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("order_id", "TEXT NOT NULL"),
                ("action_type", "TEXT NOT NULL"),
                ("from_value", "TEXT"),
                ("to_value", "TEXT"),
                ("done_by", "TEXT"),
                ("done_at", "TEXT NOT NULL"),
                ("payload", "JSONB NOT NULL DEFAULT '{}'::jsonb"),
            ),
            json_columns=frozenset({"payload"}),
            indexes=("order_id",),
        ),
        TableSpec(
            name="workflow_settings",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("service_category_code", "TEXT"),
                ("steps", "JSONB NOT NULL"),
                ("transitions", "JSONB NOT NULL"),
                ("gates", "JSONB NOT NULL DEFAULT '{}'::jsonb"),
                ("stages", "JSONB NOT NULL DEFAULT '{}'::jsonb"),
                ("is_active", "BOOLEAN NOT NULL DEFAULT TRUE"),
                ("updated_by", "TEXT"),
                ("updated_at", "TEXT NOT NULL"),
            ),
            json_columns=frozenset({"steps", "transitions", "gates", "stages"}),
        ),
        TableSpec(
            name="tenant_settings",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("settings", "JSONB NOT NULL DEFAULT '{}'::jsonb"),
                ("updated_by", "TEXT"),
                ("updated_at", "TEXT NOT NULL"),
            ),
            json_columns=frozenset({"settings"}),
        ),
        TableSpec(
            name="order_number_counters",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("counter_date", "TEXT NOT NULL"),
                ("last_value", "INTEGER NOT NULL DEFAULT 0"),
            ),
        ),
        TableSpec(
            name="outbox_events",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("event_type", "TEXT NOT NULL"),
                ("aggregate_type", "TEXT NOT NULL"),
                ("aggregate_id", "TEXT NOT NULL"),
                ("payload", "JSONB NOT NULL DEFAULT '{}'::jsonb"),
                ("status", "TEXT NOT NULL DEFAULT 'pending'"),
                ("published_at", "TEXT"),
                ("created_at", "TEXT NOT NULL"),
            ),
            json_columns=frozenset({"payload"}),
            indexes=("tenant_org_id, status",),
        ),
        TableSpec(
            name="idempotency_records",
            columns=(
                ("id", "TEXT PRIMARY KEY"),
                _TENANT,
                ("endpoint", "TEXT NOT NULL"),
                ("idempotency_key", "TEXT NOT NULL"),
                ("fingerprint", "TEXT NOT NULL"),
                ("data", "JSONB NOT NULL"),
                ("created_at", "TEXT NOT NULL"),
            ),
            json_columns=frozenset({"data"}),
        ),
    )
}


class PostgresSchemaManager:
    """Create the engine tables on PostgreSQL (idempotent)."""

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        names = list(TABLES if tables is None else tables)
        unknown = [name for name in names if name not in TABLES]
        if unknown:
            raise ValueError(f"unknown tables: {', '.join(unknown)}")
        self._tables = names

    def statements(self) -> list[str]:
        out: list[str] = []
        for name in self._tables:
            out.extend(TABLES[name].ddl())
        return out

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.statements():
                    cur.execute(statement)
            conn.commit()
        return list(self._tables)
