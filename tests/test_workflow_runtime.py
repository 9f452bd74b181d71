from __future__ import annotations

import pytest

from ontology_engine.db.context import get_provenance, get_tenant_scope
from ontology_engine.errors import NotOwnedError
from ontology_engine.models import WorkflowPhase, WorkflowProgress, WorkflowState, WorkflowTask
from ontology_engine.reaper import StaleOwnershipReaper
from ontology_engine.workflow_runtime import (
    LeaseKeeper,
    WorkflowRunner,
    WorkflowRuntime,
    create_workflow_runtime_from_env,
)

# Long enough that the lease thread never ticks during a test.
QUIET_INTERVAL = 3600


@pytest.fixture
def runner(provider, repo) -> WorkflowRunner:
    return WorkflowRunner(
        scope_provider=provider,
        workflows=repo,
        owner_id="srv_a",
        heartbeat_interval_seconds=QUIET_INTERVAL,
    )


def _load(provider, repo, workflow):
    with provider.scope(workflow.project_id) as scope:
        return repo.get_by_id(workflow_id=workflow.id, scope=scope)


def test_runner_completes_and_releases(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")
    seen = {}

    def handler(execution):
        seen["state"] = execution.workflow.state
        seen["owner"] = _load(provider, repo, workflow).owner_id
        seen["scope_tenant"] = get_tenant_scope().tenant_id
        seen["provenance"] = get_provenance()
        execution.update_progress(WorkflowProgress(current_phase="scanning", current=1, total=1))
        execution.update_task_queue([WorkflowTask(id="t1", name="profile_table", status="complete")])

    outcome = runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler)

    assert outcome == "completed"
    assert seen["state"] == WorkflowState.RUNNING
    assert seen["owner"] == "srv_a"
    assert seen["scope_tenant"] == "prj_a"
    assert seen["provenance"].source == "inference"
    assert seen["provenance"].actor_id == "srv_a"
    stored = _load(provider, repo, workflow)
    assert stored.state == WorkflowState.COMPLETED
    assert stored.completed_at is not None
    assert stored.progress.percentage() == 100
    assert stored.completed_task_count() == 1
    assert stored.owner_id is None
    assert stored.last_heartbeat is None
    assert runner.active_workflow_ids() == []


def test_runner_marks_failed_when_handler_raises(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")

    def handler(_execution):
        raise RuntimeError("profiling query failed")

    assert runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler) == "failed"
    stored = _load(provider, repo, workflow)
    assert stored.state == WorkflowState.FAILED
    assert stored.error_message == "profiling query failed"
    assert stored.owner_id is None


def test_runner_parks_workflow_in_returned_state(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")

    outcome = runner.run(
        tenant_id="prj_a",
        workflow_id=workflow.id,
        handler=lambda _execution: WorkflowState.AWAITING_INPUT,
    )

    assert outcome == "awaiting_input"
    stored = _load(provider, repo, workflow)
    assert stored.state == WorkflowState.AWAITING_INPUT
    assert stored.completed_at is None
    assert stored.owner_id is None


def test_runner_skips_workflow_owned_elsewhere(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")
    with provider.scope("prj_a") as scope:
        assert repo.claim_ownership(workflow_id=workflow.id, owner_id="srv_b", scope=scope) is True

    called = []
    outcome = runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=called.append)

    assert outcome == "not_claimed"
    assert called == []
    stored = _load(provider, repo, workflow)
    assert stored.owner_id == "srv_b"
    assert stored.state == WorkflowState.PENDING


def test_runner_stops_writing_after_losing_lease(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")
    attempts = []

    def handler(execution):
        # Simulate the reaper clearing the lease and another server taking it.
        with provider.scope("prj_a") as scope:
            repo.release_ownership(workflow_id=workflow.id, scope=scope)
            assert repo.claim_ownership(workflow_id=workflow.id, owner_id="srv_b", scope=scope) is True
        attempts.append("progress")
        execution.update_progress(WorkflowProgress(current=1, total=2))
        attempts.append("unreachable")

    outcome = runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler)

    assert outcome == "lost"
    assert attempts == ["progress"]
    stored = _load(provider, repo, workflow)
    assert stored.owner_id == "srv_b"
    assert stored.progress is None
    assert stored.state == WorkflowState.RUNNING


def _reap_and_steal(provider, repo, clock, workflow, new_owner: str = "srv_b") -> None:
    clock.advance(1000)
    reaper = StaleOwnershipReaper(scope_provider=provider, workflows=repo, stale_after_seconds=90)
    assert reaper.run_once()["released"] == 1
    with provider.scope(workflow.project_id) as scope:
        assert repo.claim_ownership(workflow_id=workflow.id, owner_id=new_owner, scope=scope) is True


def test_finish_after_reaped_lease_does_not_touch_new_owner(provider, repo, runner, clock, seed_workflow):
    workflow = seed_workflow("prj_a")

    def handler(_execution):
        _reap_and_steal(provider, repo, clock, workflow)

    assert runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler) == "lost"
    stored = _load(provider, repo, workflow)
    assert stored.owner_id == "srv_b"
    assert stored.last_heartbeat is not None
    assert stored.state == WorkflowState.RUNNING


def test_shutdown_after_reaped_lease_keeps_new_owner(provider, repo, runner, clock, seed_workflow):
    workflow = seed_workflow("prj_a")
    released = []

    def handler(_execution):
        _reap_and_steal(provider, repo, clock, workflow)
        released.extend(runner.shutdown())

    assert runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler) == "lost"
    assert released == []
    stored = _load(provider, repo, workflow)
    assert stored.owner_id == "srv_b"
    with provider.scope("prj_a") as scope:
        assert repo.claim_ownership(workflow_id=workflow.id, owner_id="srv_c", scope=scope) is False


def test_runner_fails_workflow_on_unsupported_returned_state(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")

    outcome = runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=lambda _execution: "archived")

    assert outcome == "failed"
    stored = _load(provider, repo, workflow)
    assert stored.state == WorkflowState.FAILED
    assert "unsupported state" in stored.error_message
    assert stored.owner_id is None
    assert runner.active_workflow_ids() == []


def test_execution_refuses_writes_once_lease_marked_lost(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")

    def handler(execution):
        execution.lease.mark_lost("heartbeat_failures")
        execution.update_task_queue([WorkflowTask(id="t1", name="profile_table")])

    assert runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler) == "lost"
    stored = _load(provider, repo, workflow)
    assert stored.task_queue == []
    # the lost runner leaves the lease for the reaper
    assert stored.owner_id == "srv_a"


def test_runner_requires_owner_id(provider, repo):
    with pytest.raises(ValueError, match="owner_id"):
        WorkflowRunner(scope_provider=provider, workflows=repo, owner_id=" ")


def test_lease_keeper_renews_heartbeat(provider, repo, clock, seed_workflow):
    workflow = seed_workflow("prj_a")
    with provider.scope("prj_a") as scope:
        repo.claim_ownership(workflow_id=workflow.id, owner_id="srv_a", scope=scope)
    claimed_at = _load(provider, repo, workflow).last_heartbeat

    keeper = LeaseKeeper(
        scope_provider=provider,
        workflows=repo,
        tenant_id="prj_a",
        workflow_id=workflow.id,
        owner_id="srv_a",
        interval_seconds=QUIET_INTERVAL,
    )
    clock.advance(30)
    assert keeper.beat() is True
    assert keeper.held is True
    assert _load(provider, repo, workflow).last_heartbeat > claimed_at


def test_lease_keeper_marks_lost_when_not_owned(provider, repo, seed_workflow):
    workflow = seed_workflow("prj_a")
    lost = []
    keeper = LeaseKeeper(
        scope_provider=provider,
        workflows=repo,
        tenant_id="prj_a",
        workflow_id=workflow.id,
        owner_id="srv_a",
        interval_seconds=QUIET_INTERVAL,
        on_lost=lost.append,
    )

    assert keeper.beat() is False
    assert keeper.held is False
    assert lost == ["not_owned"]
    with pytest.raises(NotOwnedError):
        keeper.ensure_held()
    # no further heartbeats once lost
    assert keeper.beat() is False
    assert lost == ["not_owned"]


def test_lease_keeper_tolerates_transient_failures_up_to_limit(provider, repo, database, seed_workflow):
    workflow = seed_workflow("prj_a")
    with provider.scope("prj_a") as scope:
        repo.claim_ownership(workflow_id=workflow.id, owner_id="srv_a", scope=scope)
    keeper = LeaseKeeper(
        scope_provider=provider,
        workflows=repo,
        tenant_id="prj_a",
        workflow_id=workflow.id,
        owner_id="srv_a",
        interval_seconds=QUIET_INTERVAL,
        max_failures=3,
    )

    database.available = False
    assert keeper.beat() is False
    assert keeper.beat() is False
    assert keeper.held is True
    assert keeper.consecutive_failures == 2

    database.available = True
    assert keeper.beat() is True
    assert keeper.consecutive_failures == 0

    database.available = False
    for _ in range(3):
        keeper.beat()
    assert keeper.held is False
    assert keeper.lost_reason == "heartbeat_failures"


def test_runner_shutdown_releases_active_leases(provider, repo, runner, seed_workflow):
    workflow = seed_workflow("prj_a")
    released = []

    def handler(_execution):
        assert runner.active_workflow_ids() == [workflow.id]
        released.extend(runner.shutdown())

    assert runner.run(tenant_id="prj_a", workflow_id=workflow.id, handler=handler) == "lost"
    assert released == [workflow.id]
    stored = _load(provider, repo, workflow)
    assert stored.owner_id is None
    assert stored.state == WorkflowState.RUNNING


def test_runtime_dispatches_claimable_workflows_by_phase(provider, repo, runner, seed_workflow):
    ontology_wf = seed_workflow("prj_a", phase=WorkflowPhase.ONTOLOGY)
    relationships_wf = seed_workflow("prj_b", phase=WorkflowPhase.RELATIONSHIPS)
    owned_wf = seed_workflow("prj_b")
    with provider.scope("prj_b") as scope:
        repo.claim_ownership(workflow_id=owned_wf.id, owner_id="srv_b", scope=scope)

    handled = []
    runtime = WorkflowRuntime(
        scope_provider=provider,
        workflows=repo,
        runner=runner,
        handlers={"ontology": lambda execution: handled.append(execution.workflow.id)},
    )

    stats = runtime.run_once()

    assert stats["scanned"] == 2
    assert stats["completed"] == 1
    assert stats["unhandled"] == 1
    assert handled == [ontology_wf.id]
    assert _load(provider, repo, ontology_wf).state == WorkflowState.COMPLETED
    assert _load(provider, repo, relationships_wf).state == WorkflowState.PENDING
    assert _load(provider, repo, owned_wf).owner_id == "srv_b"


def test_runtime_counts_handler_outcomes(provider, repo, runner, seed_workflow):
    seed_workflow("prj_a")
    seed_workflow("prj_a")

    calls = []

    def handler(execution):
        calls.append(execution.workflow.id)
        if len(calls) == 1:
            raise RuntimeError("boom")

    runtime = WorkflowRuntime(scope_provider=provider, workflows=repo, runner=runner, handlers={"ontology": handler})
    totals = runtime.run_forever(stop_after_iterations=1)

    assert totals["scanned"] == 2
    assert totals["failed"] == 1
    assert totals["completed"] == 1
    assert totals["errors"] == 0


def test_create_workflow_runtime_from_env(provider, repo):
    runtime = create_workflow_runtime_from_env(
        scope_provider=provider,
        workflows=repo,
        handlers={},
        environ={
            "SERVER_INSTANCE_ID": "srv_env",
            "WORKFLOW_HEARTBEAT_INTERVAL_SECONDS": "10",
            "WORKER_MAX_WORKFLOWS_PER_ITERATION": "4",
            "WORKER_POLL_INTERVAL_MS": "250",
        },
    )

    assert runtime.runner.owner_id == "srv_env"
    assert runtime.runner.heartbeat_interval_seconds == 10
    assert runtime.max_workflows_per_iteration == 4
    assert runtime.poll_interval_ms == 250
    assert runtime.run_once()["scanned"] == 0
