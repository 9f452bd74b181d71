from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from ontology_engine.db.context import get_tenant_scope
from ontology_engine.errors import DeadlineExceededError, MissingScopeError

logger = logging.getLogger(__name__)


class TenantScope:
    """An authorized connection bound to zero or one tenant.

    ``tenant_id`` of ``None`` marks an administrative scope that bypasses
    row-level isolation. A scope belongs to the block that acquired it and
    must not be shared between concurrent operations.
    """

    def __init__(
        self,
        *,
        tenant_id: str | None,
        conn: Any,
        release_fn: Callable[[Any], None],
        cancel_fn: Callable[[Any], None] | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tenant_id = tenant_id
        self._conn = conn
        self._release_fn = release_fn
        self._cancel_fn = cancel_fn
        self._clock = clock
        self._deadline: float | None = None
        self._cancelled = False
        self._released = False
        self._lock = threading.Lock()
        if timeout is not None:
            self.set_timeout(timeout)

    @property
    def tenant_id(self) -> str | None:
        return self._tenant_id

    @property
    def is_administrative(self) -> bool:
        return self._tenant_id is None

    @property
    def released(self) -> bool:
        return self._released

    @property
    def conn(self) -> Any:
        if self._released:
            raise MissingScopeError("tenant scope already released")
        return self._conn

    def set_timeout(self, seconds: float | None) -> None:
        if seconds is None:
            self._deadline = None
            return
        self._deadline = self._clock() + max(0.0, float(seconds))

    def remaining_ms(self) -> int | None:
        """Milliseconds left before the deadline, ``None`` when unbounded.

        Raises ``DeadlineExceededError`` once cancelled or expired so callers
        never start a round trip that is already doomed.
        """
        if self._cancelled:
            raise DeadlineExceededError("operation cancelled")
        if self._deadline is None:
            return None
        remaining = self._deadline - self._clock()
        if remaining <= 0:
            raise DeadlineExceededError()
        return max(1, int(remaining * 1000))

    def cancel(self) -> None:
        self._cancelled = True
        if self._cancel_fn is not None and not self._released:
            self._cancel_fn(self._conn)

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            self._release_fn(self._conn)
        except Exception:
            # Release must stay idempotent and silent on the caller's exit path.
            logger.warning("tenant_scope_release_failed tenant_id=%s", self._tenant_id, exc_info=True)

    def __enter__(self) -> TenantScope:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


def resolve_scope(scope: TenantScope | None) -> TenantScope:
    """Return the explicit scope, else the context-bound one, else fail."""
    active = scope if scope is not None else get_tenant_scope()
    if active is None:
        raise MissingScopeError()
    if active.released:
        raise MissingScopeError("tenant scope already released")
    return active


class TenantScopeProvider:
    """Base for scope providers; subclasses implement the two acquire calls."""

    def acquire(self, tenant_id: str, *, timeout: float | None = None) -> TenantScope:
        raise NotImplementedError

    def acquire_administrative(self, *, timeout: float | None = None) -> TenantScope:
        raise NotImplementedError

    def release(self, scope: TenantScope) -> None:
        scope.release()

    @contextmanager
    def scope(self, tenant_id: str, *, timeout: float | None = None) -> Iterator[TenantScope]:
        acquired = self.acquire(tenant_id, timeout=timeout)
        try:
            yield acquired
        finally:
            acquired.release()

    @contextmanager
    def administrative_scope(self, *, timeout: float | None = None) -> Iterator[TenantScope]:
        acquired = self.acquire_administrative(timeout=timeout)
        try:
            yield acquired
        finally:
            acquired.release()


def validate_tenant_id(tenant_id: str) -> str:
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ValueError("tenant_id must not be empty")
    return tenant_id.strip()
