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

from ontology_engine.db.rls import PostgresRlsManager


def _parse_tables(raw: str) -> dict[str, str] | None:
    if not raw.strip():
        return None
    tables: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        table, _, column = item.partition(":")
        tables[table.strip()] = column.strip() or "project_id"
    return tables


def main() -> int:
    parser = argparse.ArgumentParser(description="Create ontology tables and apply PostgreSQL tenant RLS policies")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated table[:tenant_column] entries; default uses built-in tenant tables",
    )
    parser.add_argument("--skip-schema", action="store_true", help="only (re)apply policies")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    manager = PostgresRlsManager(dsn, tables=_parse_tables(args.tables))
    created = [] if args.skip_schema else manager.create_schema()
    applied = manager.apply()
    print(
        json.dumps(
            {"created_tables": created, "applied_tables": applied, "count": len(applied)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
