from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ontology_engine.config import EngineSettings
from ontology_engine.db.memory import InMemoryDatabase, InMemoryScopeProvider, InMemoryTxRunner
from ontology_engine.db.postgres import PostgresScopeProvider, PostgresTxRunner
from ontology_engine.db.rls import PostgresRlsManager
from ontology_engine.db.scope import TenantScopeProvider
from ontology_engine.repositories.ontology_workflows import (
    InMemoryOntologyWorkflowsRepository,
    PostgresOntologyWorkflowsRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineBackend:
    settings: EngineSettings
    scope_provider: TenantScopeProvider
    workflows: Any
    database: InMemoryDatabase | None = None


def create_memory_backend(
    settings: EngineSettings | None = None,
    *,
    database: InMemoryDatabase | None = None,
) -> EngineBackend:
    cfg = settings or EngineSettings()
    db = database or InMemoryDatabase()
    return EngineBackend(
        settings=cfg,
        scope_provider=InMemoryScopeProvider(db),
        workflows=InMemoryOntologyWorkflowsRepository(tx_runner=InMemoryTxRunner()),
        database=db,
    )


def create_backend(settings: EngineSettings) -> EngineBackend:
    backend = settings.store_backend
    if backend == "memory":
        return create_memory_backend(settings)
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when ENGINE_STORE_BACKEND=postgres")
        if settings.postgres_apply_rls:
            manager = PostgresRlsManager(settings.postgres_dsn)
            manager.create_schema()
            applied = manager.apply()
            logger.info("postgres_rls_applied tables=%s", ",".join(applied))
        return EngineBackend(
            settings=settings,
            scope_provider=PostgresScopeProvider(
                settings.postgres_dsn,
                connect_timeout_seconds=settings.postgres_connect_timeout_seconds,
            ),
            workflows=PostgresOntologyWorkflowsRepository(
                tx_runner=PostgresTxRunner(statement_timeout_ms=settings.statement_timeout_ms),
            ),
        )
    raise RuntimeError(f"unsupported ENGINE_STORE_BACKEND: {backend}")


def create_backend_from_env(environ: Mapping[str, str] | None = None) -> EngineBackend:
    return create_backend(EngineSettings.from_env(environ))
