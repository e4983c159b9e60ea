from __future__ import annotations

from order_engine.db.schema import TABLES, _import_psycopg, _validate_identifier
from order_engine.query import TENANT_COLUMN

TENANT_SETTING = "app.current_tenant"


class PostgresRlsManager:
    """Enable row-level security keyed on ``tenant_org_id`` for the engine tables.

    The policy compares each row with the transaction-local setting written by
    ``PostgresTxRunner``; a connection that never sets it sees no rows.
    """

    DEFAULT_TABLES: tuple[str, ...] = tuple(TABLES)

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]

    def statements(self) -> list[str]:
        out: list[str] = []
        for table in self._tables:
            policy = f"{table}_tenant_isolation"
            predicate = f"{table}.{TENANT_COLUMN} = current_setting('{TENANT_SETTING}', true)"
            out.extend(
                [
                    f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
                    f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
                    f"DROP POLICY IF EXISTS {policy} ON {table}",
                    f"CREATE POLICY {policy} ON {table} USING ({predicate}) WITH CHECK ({predicate})",
                ]
            )
        return out

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.statements():
                    cur.execute(statement)
            conn.commit()
        return list(self._tables)
