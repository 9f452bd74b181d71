from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from ontology_engine.db.scope import TenantScope, TenantScopeProvider, resolve_scope, validate_tenant_id
from ontology_engine.errors import DeadlineExceededError, StorageUnavailableError, TenantScopeViolationError

logger = logging.getLogger(__name__)

DEFAULT_TENANT_COLUMNS: dict[str, str] = {
    "ontology_workflows": "project_id",
}

# Columns that must be null together, mirroring the table CHECK constraints.
PAIRED_COLUMNS: dict[str, tuple[str, str]] = {
    "ontology_workflows": ("owner_id", "last_heartbeat"),
}

Row = dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDatabase:
    """Process-local store applying the same tenant isolation as the PostgreSQL policies.

    Every connection call is one round trip and runs under the database lock,
    so a conditional update is atomic with respect to every other connection.
    """

    def __init__(
        self,
        *,
        tenant_columns: dict[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._tenant_columns = dict(DEFAULT_TENANT_COLUMNS if tenant_columns is None else tenant_columns)
        self._tables: dict[str, dict[str, Row]] = {name: {} for name in self._tenant_columns}
        self._clock = clock or _utcnow
        self.available = True
        self.round_trips = 0
        self.open_connections = 0

    def now(self) -> datetime:
        return self._clock()

    def reset(self) -> None:
        with self._lock:
            for rows in self._tables.values():
                rows.clear()
            self.round_trips = 0

    def connect(self, tenant_id: str | None) -> MemoryConnection:
        with self._lock:
            if not self.available:
                raise StorageUnavailableError("in-memory store is unavailable")
            self.open_connections += 1
        return MemoryConnection(self, tenant_id)

    def _disconnect(self) -> None:
        with self._lock:
            self.open_connections -= 1


class MemoryConnection:
    def __init__(self, database: InMemoryDatabase, tenant_id: str | None) -> None:
        self._db = database
        self.tenant_id = tenant_id
        self.closed = False
        self.cancelled = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._db._disconnect()

    def cancel(self) -> None:
        self.cancelled = True

    def _table(self, table: str) -> tuple[dict[str, Row], str]:
        if self.closed:
            raise StorageUnavailableError("connection is closed")
        if self.cancelled:
            raise DeadlineExceededError("operation cancelled")
        if not self._db.available:
            raise StorageUnavailableError("in-memory store is unavailable")
        self._db.round_trips += 1
        if table not in self._db._tables:
            raise ValueError(f"unknown table: {table}")
        return self._db._tables[table], self._db._tenant_columns[table]

    def _visible(self, row: Row, tenant_column: str) -> bool:
        return self.tenant_id is None or row.get(tenant_column) == self.tenant_id

    def _check(self, row: Row, table: str, tenant_column: str) -> None:
        if self.tenant_id is not None and row.get(tenant_column) != self.tenant_id:
            raise TenantScopeViolationError(f'new row violates row-level security policy for table "{table}"')
        pair = PAIRED_COLUMNS.get(table)
        if pair is not None and (row.get(pair[0]) is None) != (row.get(pair[1]) is None):
            raise ValueError(f'new row for table "{table}" violates check constraint: {pair[0]}/{pair[1]} pair')

    def select(self, table: str, where: Callable[[Row], bool] | None = None) -> list[Row]:
        with self._db._lock:
            rows, tenant_column = self._table(table)
            return [
                copy.deepcopy(row)
                for row in rows.values()
                if self._visible(row, tenant_column) and (where is None or where(row))
            ]

    def insert(self, table: str, row: Row, *, key: str = "id") -> Row:
        with self._db._lock:
            rows, tenant_column = self._table(table)
            self._check(row, table, tenant_column)
            row_id = str(row[key])
            if row_id in rows:
                raise ValueError(f"duplicate key value violates unique constraint: {table}.{key}={row_id}")
            rows[row_id] = copy.deepcopy(row)
            return copy.deepcopy(row)

    def update(
        self,
        table: str,
        row_id: str,
        *,
        changes: Callable[[Row, datetime], Row],
        where: Callable[[Row, datetime], bool] | None = None,
    ) -> tuple[bool, bool]:
        """Apply ``changes`` to one row if ``where`` holds.

        Returns ``(found, changed)``; ``found`` only counts rows this
        connection is allowed to see.
        """
        with self._db._lock:
            rows, tenant_column = self._table(table)
            current = rows.get(row_id)
            if current is None or not self._visible(current, tenant_column):
                return False, False
            now = self._db.now()
            if where is not None and not where(current, now):
                return True, False
            updated = dict(current)
            updated.update(changes(current, now))
            self._check(updated, table, tenant_column)
            rows[row_id] = copy.deepcopy(updated)
            return True, True

    def delete(self, table: str, where: Callable[[Row], bool]) -> int:
        with self._db._lock:
            rows, tenant_column = self._table(table)
            doomed = [
                row_id
                for row_id, row in rows.items()
                if self._visible(row, tenant_column) and where(row)
            ]
            for row_id in doomed:
                del rows[row_id]
            return len(doomed)

    def now(self) -> datetime:
        return self._db.now()


def _close(conn: MemoryConnection) -> None:
    conn.close()


def _cancel(conn: MemoryConnection) -> None:
    conn.cancel()


class InMemoryScopeProvider(TenantScopeProvider):
    def __init__(self, database: InMemoryDatabase) -> None:
        self.database = database

    def acquire(self, tenant_id: str, *, timeout: float | None = None) -> TenantScope:
        tenant_id = validate_tenant_id(tenant_id)
        return TenantScope(
            tenant_id=tenant_id,
            conn=self.database.connect(tenant_id),
            release_fn=_close,
            cancel_fn=_cancel,
            timeout=timeout,
        )

    def acquire_administrative(self, *, timeout: float | None = None) -> TenantScope:
        logger.info("tenant_scope_administrative_acquired")
        return TenantScope(
            tenant_id=None,
            conn=self.database.connect(None),
            release_fn=_close,
            cancel_fn=_cancel,
            timeout=timeout,
        )


class InMemoryTxRunner:
    """Counterpart of ``PostgresTxRunner``: resolve the scope, check the deadline, run."""

    def run_in_tx(self, *, scope: TenantScope | None, fn: Callable[[Any], Any]) -> Any:
        active = resolve_scope(scope)
        conn = active.conn
        active.remaining_ms()
        return fn(conn)
