from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class WorkflowState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (WorkflowState.COMPLETED, WorkflowState.FAILED)

    def can_transition_to(self, target: WorkflowState | str) -> bool:
        return WorkflowState(target) in _TRANSITIONS[self]


_TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.PENDING: frozenset({WorkflowState.RUNNING, WorkflowState.FAILED}),
    WorkflowState.RUNNING: frozenset(
        {WorkflowState.PAUSED, WorkflowState.AWAITING_INPUT, WorkflowState.COMPLETED, WorkflowState.FAILED}
    ),
    WorkflowState.PAUSED: frozenset({WorkflowState.RUNNING, WorkflowState.FAILED}),
    WorkflowState.AWAITING_INPUT: frozenset({WorkflowState.RUNNING, WorkflowState.COMPLETED, WorkflowState.FAILED}),
    # terminal workflows can only be restarted
    WorkflowState.COMPLETED: frozenset({WorkflowState.PENDING}),
    WorkflowState.FAILED: frozenset({WorkflowState.PENDING}),
}


class WorkflowPhase(str, Enum):
    RELATIONSHIPS = "relationships"
    ONTOLOGY = "ontology"


class ProgressPhase:
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    ANALYZING = "analyzing"
    DESCRIPTION_PROCESSING = "description_processing"
    SCHEMA_ANALYSIS = "schema_analysis"
    DATA_PROFILING = "data_profiling"
    QUESTION_GENERATION = "question_generation"
    TIER1_BUILDING = "tier1_building"
    TIER0_BUILDING = "tier0_building"
    AWAITING_INPUT = "awaiting_input"
    COMPLETING = "completing"


class TaskStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    PAUSED = "paused"


class WorkflowProgress(BaseModel):
    current_phase: str = ""
    current: int = 0
    total: int = 0
    tokens_per_second: float = 0.0
    time_remaining_ms: int = 0
    message: str = ""
    ontology_ready: bool = False

    def percentage(self) -> int:
        if self.total == 0:
            return 0
        return int(self.current / self.total * 100)


class WorkflowTask(BaseModel):
    id: str
    name: str
    status: str = TaskStatus.QUEUED
    requires_llm: bool = False
    table_name: str = ""
    error: str = ""
    retry_count: int = 0


class WorkflowConfig(BaseModel):
    datasource_id: str = ""
    include_all_tables: bool = True
    selected_table_ids: list[str] = Field(default_factory=list)
    skip_data_profiling: bool = False
    skip_questions: bool = False
    max_tables_per_batch: int = 20
    project_description: str = ""


def new_workflow_id() -> str:
    return f"wf_{uuid.uuid4().hex}"


class OntologyWorkflow(BaseModel):
    id: str = Field(default_factory=new_workflow_id)
    project_id: str
    ontology_id: str | None = None
    state: WorkflowState = WorkflowState.PENDING
    progress: WorkflowProgress | None = None
    task_queue: list[WorkflowTask] = Field(default_factory=list)
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    error_message: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    phase: WorkflowPhase = WorkflowPhase.ONTOLOGY
    datasource_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # lease: both set or both null
    owner_id: str | None = None
    last_heartbeat: datetime | None = None

    @model_validator(mode="after")
    def _check_lease_pair(self) -> "OntologyWorkflow":
        if (self.owner_id is None) != (self.last_heartbeat is None):
            raise ValueError("owner_id and last_heartbeat must be set or cleared together")
        return self

    def is_running(self) -> bool:
        return self.state == WorkflowState.RUNNING

    def is_paused(self) -> bool:
        return self.state == WorkflowState.PAUSED

    def is_complete(self) -> bool:
        return self.state == WorkflowState.COMPLETED

    def has_failed(self) -> bool:
        return self.state == WorkflowState.FAILED

    def is_owned(self) -> bool:
        return self.owner_id is not None

    def pending_task_count(self) -> int:
        return sum(1 for task in self.task_queue if task.status in (TaskStatus.QUEUED, TaskStatus.PROCESSING))

    def completed_task_count(self) -> int:
        return sum(1 for task in self.task_queue if task.status == TaskStatus.COMPLETE)


class StaleOwnership(BaseModel):
    """A lease whose heartbeat is older than the reaper's threshold."""

    workflow_id: str
    project_id: str
    owner_id: str
    last_heartbeat: datetime
