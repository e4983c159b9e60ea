#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from order_engine.db.rls import PostgresRlsManager
from order_engine.db.schema import PostgresSchemaManager


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the order engine tables on PostgreSQL")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument("--with-rls", action="store_true", help="also apply tenant row-level-security policies")
    parser.add_argument("--dry-run", action="store_true", help="print the DDL instead of executing it")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn and not args.dry_run:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    schema = PostgresSchemaManager(dsn or "dry-run")
    if args.dry_run:
        statements = schema.statements()
        if args.with_rls:
            statements += PostgresRlsManager(dsn or "dry-run").statements()
        print(";\n".join(statements) + ";")
        return 0

    created = schema.apply()
    result: dict[str, object] = {"created_tables": created}
    if args.with_rls:
        result["rls_tables"] = PostgresRlsManager(dsn).apply()
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
