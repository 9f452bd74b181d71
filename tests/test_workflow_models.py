from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from ontology_engine.models import (
    OntologyWorkflow,
    TaskStatus,
    WorkflowConfig,
    WorkflowProgress,
    WorkflowState,
    WorkflowTask,
)


def test_terminal_states():
    assert {state for state in WorkflowState if state.is_terminal()} == {
        WorkflowState.COMPLETED,
        WorkflowState.FAILED,
    }


@pytest.mark.parametrize(
    ("source", "target", "allowed"),
    [
        ("pending", "running", True),
        ("pending", "failed", True),
        ("pending", "completed", False),
        ("running", "paused", True),
        ("running", "awaiting_input", True),
        ("running", "completed", True),
        ("running", "pending", False),
        ("paused", "running", True),
        ("paused", "completed", False),
        ("awaiting_input", "running", True),
        ("awaiting_input", "completed", True),
        ("awaiting_input", "paused", False),
        ("completed", "pending", True),
        ("completed", "running", False),
        ("failed", "pending", True),
        ("failed", "failed", False),
    ],
)
def test_state_transitions(source, target, allowed):
    assert WorkflowState(source).can_transition_to(target) is allowed


def test_unknown_state_is_rejected():
    with pytest.raises(ValueError):
        WorkflowState("archived")


def test_progress_percentage():
    assert WorkflowProgress().percentage() == 0
    assert WorkflowProgress(current=1, total=3).percentage() == 33
    assert WorkflowProgress(current=5, total=5).percentage() == 100


def test_default_config():
    config = WorkflowConfig()
    assert config.include_all_tables is True
    assert config.max_tables_per_batch == 20
    assert config.selected_table_ids == []


def test_workflow_helpers():
    workflow = OntologyWorkflow(
        project_id="prj_a",
        state=WorkflowState.RUNNING,
        task_queue=[
            WorkflowTask(id="t1", name="profile_table", status=TaskStatus.QUEUED),
            WorkflowTask(id="t2", name="profile_table", status=TaskStatus.PROCESSING),
            WorkflowTask(id="t3", name="profile_table", status=TaskStatus.COMPLETE),
            WorkflowTask(id="t4", name="profile_table", status=TaskStatus.FAILED),
        ],
    )
    assert workflow.id.startswith("wf_")
    assert workflow.is_running() is True
    assert workflow.is_paused() is False
    assert workflow.is_complete() is False
    assert workflow.has_failed() is False
    assert workflow.is_owned() is False
    assert workflow.pending_task_count() == 2
    assert workflow.completed_task_count() == 1


def test_lease_columns_must_be_set_together():
    with pytest.raises(ValidationError, match="set or cleared together"):
        OntologyWorkflow(project_id="prj_a", owner_id="ghost")
    with pytest.raises(ValidationError, match="set or cleared together"):
        OntologyWorkflow(project_id="prj_a", last_heartbeat=datetime(2026, 1, 1, tzinfo=timezone.utc))

    owned = OntologyWorkflow(project_id="prj_a", owner_id="P1", last_heartbeat=datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert owned.is_owned() is True
