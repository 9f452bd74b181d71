from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ontology_engine.config import EngineSettings
from ontology_engine.db.context import Provenance, bind_provenance, bind_tenant_scope
from ontology_engine.db.scope import TenantScope, TenantScopeProvider
from ontology_engine.errors import (
    DeadlineExceededError,
    EngineError,
    NotFoundError,
    NotOwnedError,
    StorageUnavailableError,
)
from ontology_engine.models import OntologyWorkflow, WorkflowProgress, WorkflowState, WorkflowTask

logger = logging.getLogger(__name__)


class LeaseKeeper:
    """Renew one workflow's heartbeat from a background thread.

    Each tick acquires its own tenant scope. ``NotOwnedError`` marks the lease
    lost at once; transient storage failures are tolerated until
    ``max_failures`` happen in a row.
    """

    def __init__(
        self,
        *,
        scope_provider: TenantScopeProvider,
        workflows: Any,
        tenant_id: str,
        workflow_id: str,
        owner_id: str,
        interval_seconds: float = 30.0,
        max_failures: int = 3,
        on_lost: Callable[[str], None] | None = None,
    ) -> None:
        self._scope_provider = scope_provider
        self._workflows = workflows
        self.tenant_id = tenant_id
        self.workflow_id = workflow_id
        self.owner_id = owner_id
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.max_failures = max(1, int(max_failures))
        self._on_lost = on_lost
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread: threading.Thread | None = None
        self.consecutive_failures = 0
        self.lost_reason = ""

    @property
    def held(self) -> bool:
        return not self._lost.is_set()

    def ensure_held(self) -> None:
        if self._lost.is_set():
            raise NotOwnedError(workflow_id=self.workflow_id, owner_id=self.owner_id)

    def mark_lost(self, reason: str) -> None:
        if self._lost.is_set():
            return
        self.lost_reason = reason
        self._lost.set()
        logger.warning(
            "workflow_lease_lost workflow_id=%s owner_id=%s reason=%s",
            self.workflow_id,
            self.owner_id,
            reason,
        )
        if self._on_lost is not None:
            self._on_lost(reason)

    def beat(self) -> bool:
        """Send one heartbeat; return whether the lease was renewed."""
        if self._lost.is_set():
            return False
        try:
            with self._scope_provider.scope(self.tenant_id, timeout=self.interval_seconds) as scope:
                self._workflows.update_heartbeat(
                    workflow_id=self.workflow_id,
                    owner_id=self.owner_id,
                    scope=scope,
                )
        except NotOwnedError:
            self.mark_lost("not_owned")
            return False
        except (StorageUnavailableError, DeadlineExceededError) as exc:
            self.consecutive_failures += 1
            logger.warning(
                "workflow_heartbeat_failed workflow_id=%s failures=%s error=%s",
                self.workflow_id,
                self.consecutive_failures,
                exc.code,
            )
            if self.consecutive_failures >= self.max_failures:
                self.mark_lost("heartbeat_failures")
            return False
        self.consecutive_failures = 0
        logger.debug("workflow_heartbeat workflow_id=%s owner_id=%s", self.workflow_id, self.owner_id)
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.beat()
            if self._lost.is_set():
                return

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-{self.workflow_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)


class WorkflowExecution:
    """Handle given to workflow handlers; every write is guarded by the lease owner."""

    def __init__(
        self,
        *,
        workflows: Any,
        workflow: OntologyWorkflow,
        scope: TenantScope,
        lease: LeaseKeeper,
    ) -> None:
        self._workflows = workflows
        self.workflow = workflow
        self.scope = scope
        self.lease = lease

    @property
    def owner_id(self) -> str:
        return self.lease.owner_id

    def ensure_owned(self) -> None:
        self.lease.ensure_held()

    def update_progress(self, progress: WorkflowProgress) -> None:
        self.ensure_owned()
        self._workflows.update_progress(
            workflow_id=self.workflow.id,
            progress=progress,
            owner_id=self.owner_id,
            scope=self.scope,
        )
        self.workflow.progress = progress

    def update_task_queue(self, tasks: Sequence[WorkflowTask]) -> None:
        self.ensure_owned()
        self._workflows.update_task_queue(
            workflow_id=self.workflow.id,
            tasks=tasks,
            owner_id=self.owner_id,
            scope=self.scope,
        )
        self.workflow.task_queue = list(tasks)


# Returning None completes the workflow; returning a state (e.g. awaiting_input) parks it there.
WorkflowHandler = Callable[[WorkflowExecution], Any]


class WorkflowRunner:
    """Claim a workflow, run its handler under a heartbeat lease, then release."""

    def __init__(
        self,
        *,
        scope_provider: TenantScopeProvider,
        workflows: Any,
        owner_id: str,
        heartbeat_interval_seconds: float = 30.0,
        max_heartbeat_failures: int = 3,
    ) -> None:
        if not owner_id.strip():
            raise ValueError("owner_id must not be empty")
        self._scope_provider = scope_provider
        self._workflows = workflows
        self.owner_id = owner_id
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.max_heartbeat_failures = max_heartbeat_failures
        self._active: dict[str, LeaseKeeper] = {}
        self._lock = threading.Lock()

    def active_workflow_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def _finish(
        self,
        *,
        scope: TenantScope,
        lease: LeaseKeeper,
        state: WorkflowState,
        error_message: str = "",
    ) -> str:
        if not lease.held:
            return "lost"
        try:
            self._workflows.update_state(
                workflow_id=lease.workflow_id,
                state=state,
                error_message=error_message,
                owner_id=self.owner_id,
                scope=scope,
            )
        except NotOwnedError:
            lease.mark_lost("not_owned")
            return "lost"
        return state.value

    def run(self, *, tenant_id: str, workflow_id: str, handler: WorkflowHandler) -> str:
        with self._scope_provider.scope(tenant_id) as scope:
            if not self._workflows.claim_ownership(workflow_id=workflow_id, owner_id=self.owner_id, scope=scope):
                return "not_claimed"

            lease = LeaseKeeper(
                scope_provider=self._scope_provider,
                workflows=self._workflows,
                tenant_id=tenant_id,
                workflow_id=workflow_id,
                owner_id=self.owner_id,
                interval_seconds=self.heartbeat_interval_seconds,
                max_failures=self.max_heartbeat_failures,
            )
            with self._lock:
                self._active[workflow_id] = lease
            outcome = "lost"
            try:
                self._workflows.update_state(
                    workflow_id=workflow_id,
                    state=WorkflowState.RUNNING,
                    owner_id=self.owner_id,
                    scope=scope,
                )
                lease.start()
                workflow = self._workflows.get_by_id(workflow_id=workflow_id, scope=scope)
                if workflow is None:
                    raise NotFoundError(workflow_id=workflow_id)
                execution = WorkflowExecution(workflows=self._workflows, workflow=workflow, scope=scope, lease=lease)
                try:
                    with bind_tenant_scope(scope), bind_provenance(Provenance("inference", self.owner_id)):
                        result = handler(execution)
                except NotOwnedError:
                    lease.mark_lost("not_owned")
                except Exception as exc:
                    # Handler failures end the workflow, not the runner.
                    logger.exception("workflow_handler_failed workflow_id=%s", workflow_id)
                    outcome = self._finish(
                        scope=scope,
                        lease=lease,
                        state=WorkflowState.FAILED,
                        error_message=str(exc),
                    )
                else:
                    try:
                        final_state = WorkflowState.COMPLETED if result is None else WorkflowState(result)
                    except ValueError:
                        logger.warning("workflow_handler_bad_state workflow_id=%s state=%r", workflow_id, result)
                        outcome = self._finish(
                            scope=scope,
                            lease=lease,
                            state=WorkflowState.FAILED,
                            error_message=f"handler returned unsupported state: {result!r}",
                        )
                    else:
                        outcome = self._finish(scope=scope, lease=lease, state=final_state)
            except NotOwnedError:
                lease.mark_lost("not_owned")
                outcome = "lost"
            finally:
                lease.stop()
                with self._lock:
                    self._active.pop(workflow_id, None)
                if lease.held:
                    self._release(scope=scope, workflow_id=workflow_id)
            logger.info("workflow_run_finished workflow_id=%s outcome=%s", workflow_id, outcome)
            return outcome

    def _release(self, *, scope: TenantScope, workflow_id: str) -> None:
        try:
            self._workflows.release_ownership_if_owner(
                workflow_id=workflow_id,
                owner_id=self.owner_id,
                scope=scope,
            )
        except EngineError as exc:
            # The reaper clears leases whose release did not go through.
            logger.warning("workflow_release_failed workflow_id=%s error=%s", workflow_id, exc.code)

    def shutdown(self) -> list[str]:
        """Give up every lease this runner still holds so other servers can take over.

        A lease that was reaped and claimed by another server is left untouched.
        """
        with self._lock:
            leases = list(self._active.values())
        released: list[str] = []
        for lease in leases:
            lease.stop()
            lease.mark_lost("shutdown")
            try:
                with self._scope_provider.scope(lease.tenant_id) as scope:
                    ok = self._workflows.release_ownership_if_owner(
                        workflow_id=lease.workflow_id,
                        owner_id=self.owner_id,
                        scope=scope,
                    )
            except EngineError as exc:
                logger.warning(
                    "workflow_release_failed_on_shutdown workflow_id=%s error=%s",
                    lease.workflow_id,
                    exc.code,
                )
                continue
            if ok:
                released.append(lease.workflow_id)
        return released


@dataclass
class WorkflowRunStats:
    scanned: int = 0
    not_claimed: int = 0
    completed: int = 0
    failed: int = 0
    suspended: int = 0
    lost: int = 0
    unhandled: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "not_claimed": self.not_claimed,
            "completed": self.completed,
            "failed": self.failed,
            "suspended": self.suspended,
            "lost": self.lost,
            "unhandled": self.unhandled,
            "errors": self.errors,
        }

    def record(self, outcome: str) -> None:
        if outcome in ("not_claimed", "completed", "failed", "lost"):
            setattr(self, outcome, getattr(self, outcome) + 1)
        else:
            self.suspended += 1


class WorkflowRuntime:
    """Resident loop picking up unowned workflows and running them by phase."""

    def __init__(
        self,
        *,
        scope_provider: TenantScopeProvider,
        workflows: Any,
        runner: WorkflowRunner,
        handlers: Mapping[str, WorkflowHandler],
        max_workflows_per_iteration: int = 10,
        poll_interval_ms: int = 1000,
    ) -> None:
        self._scope_provider = scope_provider
        self._workflows = workflows
        self.runner = runner
        self.handlers = dict(handlers)
        self.max_workflows_per_iteration = max(1, int(max_workflows_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._stop = threading.Event()

    def run_once(self) -> dict[str, int]:
        stats = WorkflowRunStats()
        with self._scope_provider.administrative_scope() as scope:
            candidates = self._workflows.list_claimable(limit=self.max_workflows_per_iteration, scope=scope)
        for workflow in candidates:
            if self._stop.is_set():
                break
            stats.scanned += 1
            handler = self.handlers.get(workflow.phase.value)
            if handler is None:
                stats.unhandled += 1
                continue
            try:
                outcome = self.runner.run(tenant_id=workflow.project_id, workflow_id=workflow.id, handler=handler)
            except Exception:
                # Keep runtime loop alive on storage or bookkeeping failures.
                logger.exception("workflow_run_error workflow_id=%s", workflow.id)
                stats.errors += 1
                continue
            stats.record(outcome)
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate: dict[str, int] = WorkflowRunStats().as_dict()
        iterations = 0
        while not self._stop.is_set():
            current = self.run_once()
            for key, value in current.items():
                aggregate[key] += int(value)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["scanned"]) == 0:
                self._stop.wait(self.poll_interval_ms / 1000.0)
        return aggregate

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self) -> list[str]:
        self.stop()
        return self.runner.shutdown()


def create_workflow_runtime_from_env(
    *,
    scope_provider: TenantScopeProvider,
    workflows: Any,
    handlers: Mapping[str, WorkflowHandler],
    environ: Mapping[str, str] | None = None,
) -> WorkflowRuntime:
    env = os.environ if environ is None else environ
    settings = EngineSettings.from_env(env)
    runner = WorkflowRunner(
        scope_provider=scope_provider,
        workflows=workflows,
        owner_id=settings.server_instance_id,
        heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
        max_heartbeat_failures=settings.max_heartbeat_failures,
    )
    return WorkflowRuntime(
        scope_provider=scope_provider,
        workflows=workflows,
        runner=runner,
        handlers=handlers,
        max_workflows_per_iteration=settings.worker_max_workflows_per_iteration,
        poll_interval_ms=settings.worker_poll_interval_ms,
    )
