from __future__ import annotations

import re
from typing import Any

from ontology_engine.db.postgres import _import_psycopg

WORKFLOWS_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS ontology_workflows (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        ontology_id TEXT,
        state TEXT NOT NULL DEFAULT 'pending',
        progress JSONB,
        task_queue JSONB NOT NULL DEFAULT '[]'::jsonb,
        config JSONB NOT NULL DEFAULT '{}'::jsonb,
        error_message TEXT NOT NULL DEFAULT '',
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        phase TEXT NOT NULL DEFAULT 'ontology',
        datasource_id TEXT,
        owner_id TEXT,
        last_heartbeat TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT ontology_workflows_owner_heartbeat_pair
            CHECK ((owner_id IS NULL) = (last_heartbeat IS NULL))
    )
    """,
    "CREATE INDEX IF NOT EXISTS ontology_workflows_project_idx ON ontology_workflows (project_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS ontology_workflows_ontology_idx ON ontology_workflows (ontology_id)",
    """
    CREATE INDEX IF NOT EXISTS ontology_workflows_heartbeat_idx
    ON ontology_workflows (last_heartbeat)
    WHERE owner_id IS NOT NULL
    """,
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresRlsManager:
    """Apply tenant isolation policies on PostgreSQL tables.

    Sessions without ``app.current_tenant`` (administrative scopes) pass the
    policy; tenant sessions only see and write their own rows.
    """

    DEFAULT_TABLES: dict[str, str] = {
        "ontology_workflows": "project_id",
    }

    def __init__(self, dsn: str, *, tables: dict[str, str] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = dict(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = {
            _validate_identifier(table): _validate_identifier(column) for table, column in target_tables.items()
        }

    def _connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def create_schema(self) -> list[str]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                for statement in WORKFLOWS_SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        return ["ontology_workflows"]

    def apply(self) -> list[str]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                for table, column in self._tables.items():
                    policy = f"{table}_tenant_isolation"
                    check = (
                        "NULLIF(current_setting('app.current_tenant', true), '') IS NULL "
                        f"OR {table}.{column} = current_setting('app.current_tenant', true)"
                    )
                    cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                    cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                    cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                    cur.execute(
                        f"""
                        CREATE POLICY {policy} ON {table}
                        USING ({check})
                        WITH CHECK ({check})
                        """
                    )
            conn.commit()
        return list(self._tables)
