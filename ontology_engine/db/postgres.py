from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from ontology_engine.db.scope import TenantScope, TenantScopeProvider, resolve_scope, validate_tenant_id
from ontology_engine.errors import (
    DeadlineExceededError,
    EngineError,
    StorageUnavailableError,
    TenantScopeViolationError,
)

logger = logging.getLogger(__name__)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def _close_connection(conn: Any) -> None:
    conn.close()


def _cancel_connection(conn: Any) -> None:
    conn.cancel()


def map_driver_error(psycopg: Any, exc: Exception) -> EngineError | None:
    """Translate a psycopg failure into the engine's error taxonomy."""
    errors = getattr(psycopg, "errors", None)
    if errors is not None and isinstance(exc, errors.QueryCanceled):
        return DeadlineExceededError(f"statement cancelled: {exc}")
    if errors is not None and isinstance(exc, errors.InsufficientPrivilege):
        return TenantScopeViolationError(f"row-level security rejected the statement: {exc}")
    if isinstance(exc, psycopg.OperationalError):
        return StorageUnavailableError(f"postgres unavailable: {exc}")
    return None


@contextmanager
def translate_driver_errors(psycopg: Any) -> Iterator[None]:
    try:
        yield
    except psycopg.Error as exc:
        mapped = map_driver_error(psycopg, exc)
        if mapped is None:
            raise
        raise mapped from exc


class PostgresScopeProvider(TenantScopeProvider):
    """Hand out one dedicated PostgreSQL session per tenant scope."""

    def __init__(self, dsn: str, *, connect_timeout_seconds: int = 5) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect_timeout_seconds = max(1, int(connect_timeout_seconds))

    def _connect(self, psycopg: Any, *, timeout: float | None) -> Any:
        connect_timeout = self._connect_timeout_seconds
        if timeout is not None:
            connect_timeout = max(1, min(connect_timeout, int(timeout)))
        with translate_driver_errors(psycopg):
            return psycopg.connect(self._dsn, autocommit=True, connect_timeout=connect_timeout)

    def acquire(self, tenant_id: str, *, timeout: float | None = None) -> TenantScope:
        tenant_id = validate_tenant_id(tenant_id)
        psycopg = _import_psycopg()
        conn = self._connect(psycopg, timeout=timeout)
        try:
            with translate_driver_errors(psycopg):
                with conn.cursor() as cur:
                    # Session level: the binding lives exactly as long as the scope's connection.
                    cur.execute("SELECT set_config('app.current_tenant', %s, false)", (tenant_id,))
        except Exception:
            conn.close()
            raise
        return TenantScope(
            tenant_id=tenant_id,
            conn=conn,
            release_fn=_close_connection,
            cancel_fn=_cancel_connection,
            timeout=timeout,
        )

    def acquire_administrative(self, *, timeout: float | None = None) -> TenantScope:
        psycopg = _import_psycopg()
        conn = self._connect(psycopg, timeout=timeout)
        logger.info("tenant_scope_administrative_acquired")
        return TenantScope(
            tenant_id=None,
            conn=conn,
            release_fn=_close_connection,
            cancel_fn=_cancel_connection,
            timeout=timeout,
        )


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction on the scope's session."""

    def __init__(self, *, statement_timeout_ms: int = 0) -> None:
        self._statement_timeout_ms = max(0, int(statement_timeout_ms))

    def _timeout_ms(self, scope: TenantScope) -> int | None:
        remaining = scope.remaining_ms()
        configured = self._statement_timeout_ms or None
        if remaining is None:
            return configured
        if configured is None:
            return remaining
        return min(configured, remaining)

    def run_in_tx(
        self,
        *,
        scope: TenantScope | None,
        fn: Callable[[Any], Any],
    ) -> Any:
        active = resolve_scope(scope)
        conn = active.conn
        timeout_ms = self._timeout_ms(active)

        psycopg = _import_psycopg()
        with translate_driver_errors(psycopg):
            with conn.transaction():
                if timeout_ms is not None:
                    with conn.cursor() as cur:
                        cur.execute("SELECT set_config('statement_timeout', %s, true)", (str(timeout_ms),))
                return fn(conn)
