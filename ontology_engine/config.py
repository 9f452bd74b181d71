from __future__ import annotations

import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class EngineSettings:
    store_backend: str = "memory"
    postgres_dsn: str = ""
    postgres_connect_timeout_seconds: int = 5
    postgres_apply_rls: bool = False
    statement_timeout_ms: int = 0
    heartbeat_interval_seconds: int = 30
    stale_after_multiplier: int = 3
    max_heartbeat_failures: int = 3
    reaper_interval_seconds: int = 60
    reaper_batch_size: int = 100
    worker_poll_interval_ms: int = 1000
    worker_max_workflows_per_iteration: int = 10
    server_instance_id: str = ""

    @property
    def stale_after_seconds(self) -> int:
        return self.heartbeat_interval_seconds * self.stale_after_multiplier

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            store_backend=str(env.get("ENGINE_STORE_BACKEND", "memory")).strip().lower() or "memory",
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            postgres_connect_timeout_seconds=_env_int(
                env, "POSTGRES_CONNECT_TIMEOUT_SECONDS", default=5, minimum=1
            ),
            postgres_apply_rls=_env_bool(env, "POSTGRES_APPLY_RLS", False),
            statement_timeout_ms=_env_int(env, "ENGINE_STATEMENT_TIMEOUT_MS", default=0, minimum=0),
            heartbeat_interval_seconds=_env_int(env, "WORKFLOW_HEARTBEAT_INTERVAL_SECONDS", default=30, minimum=1),
            stale_after_multiplier=_env_int(env, "WORKFLOW_STALE_AFTER_MULTIPLIER", default=3, minimum=2),
            max_heartbeat_failures=_env_int(env, "WORKFLOW_MAX_HEARTBEAT_FAILURES", default=3, minimum=1),
            reaper_interval_seconds=_env_int(env, "REAPER_INTERVAL_SECONDS", default=60, minimum=1),
            reaper_batch_size=_env_int(env, "REAPER_BATCH_SIZE", default=100, minimum=1),
            worker_poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=1000, minimum=1),
            worker_max_workflows_per_iteration=_env_int(
                env, "WORKER_MAX_WORKFLOWS_PER_ITERATION", default=10, minimum=1
            ),
            server_instance_id=str(env.get("SERVER_INSTANCE_ID", "")).strip() or f"srv_{uuid.uuid4().hex[:12]}",
        )
