from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ontology_engine.db.scope import TenantScope

PROVENANCE_SOURCES = ("inference", "manual", "mcp")

_tenant_scope: contextvars.ContextVar["TenantScope | None"] = contextvars.ContextVar(
    "ontology_engine_tenant_scope", default=None
)
_provenance: contextvars.ContextVar["Provenance | None"] = contextvars.ContextVar(
    "ontology_engine_provenance", default=None
)


@dataclass(frozen=True)
class Provenance:
    """Who (and which channel) is behind the writes of the current operation."""

    source: str
    actor_id: str = ""

    def __post_init__(self) -> None:
        if self.source not in PROVENANCE_SOURCES:
            raise ValueError(f"unsupported provenance source: {self.source}")


def get_tenant_scope() -> TenantScope | None:
    return _tenant_scope.get()


@contextmanager
def bind_tenant_scope(scope: TenantScope) -> Iterator[TenantScope]:
    token = _tenant_scope.set(scope)
    try:
        yield scope
    finally:
        _tenant_scope.reset(token)


def get_provenance() -> Provenance | None:
    return _provenance.get()


@contextmanager
def bind_provenance(provenance: Provenance) -> Iterator[Provenance]:
    token = _provenance.set(provenance)
    try:
        yield provenance
    finally:
        _provenance.reset(token)
