from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from ontology_engine.config import EngineSettings
from ontology_engine.db.scope import TenantScopeProvider
from ontology_engine.errors import DeadlineExceededError, StorageUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class ReaperRunStats:
    scanned: int = 0
    released: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "released": self.released,
            "skipped": self.skipped,
        }


class StaleOwnershipReaper:
    """Clear workflow leases whose owner stopped sending heartbeats.

    Runs through an administrative scope. The release is conditional on the
    observed owner and a still-stale heartbeat, so a lease renewed between
    scan and release is left alone. A reaped ``running`` workflow becomes
    claimable again.
    """

    def __init__(
        self,
        *,
        scope_provider: TenantScopeProvider,
        workflows: Any,
        stale_after_seconds: float = 90.0,
        batch_size: int = 100,
        interval_seconds: float = 60.0,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be positive")
        self._scope_provider = scope_provider
        self._workflows = workflows
        self.stale_after_seconds = float(stale_after_seconds)
        self.batch_size = max(1, int(batch_size))
        self.interval_seconds = max(0.01, float(interval_seconds))
        self._stop = threading.Event()

    def run_once(self) -> dict[str, int]:
        stats = ReaperRunStats()
        with self._scope_provider.administrative_scope() as scope:
            stale = self._workflows.list_stale_ownerships(
                stale_after_seconds=self.stale_after_seconds,
                limit=self.batch_size,
                scope=scope,
            )
            for item in stale:
                stats.scanned += 1
                released = self._workflows.release_stale_ownership(
                    workflow_id=item.workflow_id,
                    owner_id=item.owner_id,
                    stale_after_seconds=self.stale_after_seconds,
                    scope=scope,
                )
                if released:
                    stats.released += 1
                    logger.info(
                        "workflow_stale_ownership_released workflow_id=%s project_id=%s owner_id=%s last_heartbeat=%s",
                        item.workflow_id,
                        item.project_id,
                        item.owner_id,
                        item.last_heartbeat.isoformat(),
                    )
                else:
                    stats.skipped += 1
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = ReaperRunStats()
        iterations = 0
        while not self._stop.is_set():
            try:
                current = self.run_once()
            except (StorageUnavailableError, DeadlineExceededError) as exc:
                logger.warning("reaper_iteration_failed error=%s", exc.code)
                current = ReaperRunStats().as_dict()
            aggregate.scanned += int(current["scanned"])
            aggregate.released += int(current["released"])
            aggregate.skipped += int(current["skipped"])
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            self._stop.wait(self.interval_seconds)
        return aggregate.as_dict()

    def stop(self) -> None:
        self._stop.set()


def create_reaper_from_settings(
    *,
    scope_provider: TenantScopeProvider,
    workflows: Any,
    settings: EngineSettings,
) -> StaleOwnershipReaper:
    return StaleOwnershipReaper(
        scope_provider=scope_provider,
        workflows=workflows,
        stale_after_seconds=settings.stale_after_seconds,
        batch_size=settings.reaper_batch_size,
        interval_seconds=settings.reaper_interval_seconds,
    )
