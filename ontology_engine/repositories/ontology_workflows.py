from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from ontology_engine.db.context import get_provenance
from ontology_engine.db.memory import InMemoryTxRunner
from ontology_engine.db.postgres import PostgresTxRunner
from ontology_engine.db.scope import TenantScope
from ontology_engine.errors import NotFoundError, NotOwnedError
from ontology_engine.models import (
    OntologyWorkflow,
    StaleOwnership,
    WorkflowPhase,
    WorkflowProgress,
    WorkflowState,
    WorkflowTask,
)

logger = logging.getLogger(__name__)

CLAIMABLE_STATES: tuple[str, ...] = (WorkflowState.PENDING.value, WorkflowState.RUNNING.value)

_COLUMNS: tuple[str, ...] = (
    "id",
    "project_id",
    "ontology_id",
    "state",
    "progress",
    "task_queue",
    "config",
    "error_message",
    "started_at",
    "completed_at",
    "phase",
    "datasource_id",
    "created_at",
    "updated_at",
    "owner_id",
    "last_heartbeat",
)

# Columns replaced by a full update; identity, tenant and lease fields are never touched.
_MUTABLE_COLUMNS: tuple[str, ...] = (
    "ontology_id",
    "state",
    "progress",
    "task_queue",
    "config",
    "error_message",
    "started_at",
    "completed_at",
    "phase",
    "datasource_id",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _to_row(workflow: OntologyWorkflow) -> dict[str, Any]:
    row = workflow.model_dump()
    row["state"] = workflow.state.value
    row["phase"] = workflow.phase.value
    return row


def _dump_progress(progress: WorkflowProgress | None) -> dict[str, Any] | None:
    return None if progress is None else progress.model_dump()


def _dump_tasks(tasks: Sequence[WorkflowTask]) -> list[dict[str, Any]]:
    return [task.model_dump() for task in tasks]


def _check_guarded_write(*, found: bool, changed: bool, workflow_id: str, owner_id: str | None) -> None:
    if not found:
        raise NotFoundError(workflow_id=workflow_id)
    if not changed and owner_id is not None:
        logger.warning("workflow_write_rejected_not_owner workflow_id=%s owner_id=%s", workflow_id, owner_id)
        raise NotOwnedError(workflow_id=workflow_id, owner_id=owner_id)


def _log_deleted(*, what: str, key: str, count: int) -> None:
    provenance = get_provenance()
    logger.info(
        "workflow_deleted %s=%s count=%s source=%s actor_id=%s",
        what,
        key,
        count,
        provenance.source if provenance else "",
        provenance.actor_id if provenance else "",
    )


def _log_claim(*, claimed: bool, workflow_id: str, owner_id: str) -> bool:
    # a missing row and a row owned elsewhere both come back as False
    if claimed:
        logger.info("workflow_claimed workflow_id=%s owner_id=%s", workflow_id, owner_id)
    else:
        logger.info("workflow_claim_rejected workflow_id=%s owner_id=%s", workflow_id, owner_id)
    return claimed


def _log_owner_release(*, released: bool, workflow_id: str, owner_id: str) -> bool:
    if released:
        logger.info("workflow_ownership_released workflow_id=%s owner_id=%s", workflow_id, owner_id)
    else:
        logger.warning("workflow_release_skipped_not_owner workflow_id=%s owner_id=%s", workflow_id, owner_id)
    return released


class InMemoryOntologyWorkflowsRepository:
    def __init__(
        self,
        *,
        tx_runner: InMemoryTxRunner | None = None,
        table_name: str = "ontology_workflows",
    ) -> None:
        self._tx_runner = tx_runner or InMemoryTxRunner()
        self._table_name = _validate_identifier(table_name)

    def _latest(self, scope: TenantScope | None, predicate: Any) -> OntologyWorkflow | None:
        def _op(conn: Any) -> OntologyWorkflow | None:
            rows = conn.select(self._table_name, predicate)
            if not rows:
                return None
            rows.sort(key=lambda x: x["created_at"])
            return OntologyWorkflow.model_validate(rows[-1])

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def _update(
        self,
        scope: TenantScope | None,
        workflow_id: str,
        changes: Any,
        *,
        owner_id: str | None = None,
        where: Any = None,
    ) -> tuple[bool, bool]:
        if where is None and owner_id is not None:

            def where(row: dict[str, Any], _now: datetime) -> bool:
                return row.get("owner_id") == owner_id

        def _op(conn: Any) -> tuple[bool, bool]:
            return conn.update(self._table_name, workflow_id, changes=changes, where=where)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def create(self, *, workflow: OntologyWorkflow, scope: TenantScope | None = None) -> OntologyWorkflow:
        def _op(conn: Any) -> OntologyWorkflow:
            now = conn.now()
            row = _to_row(workflow)
            row["created_at"] = now
            row["updated_at"] = now
            return OntologyWorkflow.model_validate(conn.insert(self._table_name, row))

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def get_by_id(self, *, workflow_id: str, scope: TenantScope | None = None) -> OntologyWorkflow | None:
        return self._latest(scope, lambda row: row["id"] == workflow_id)

    def get_by_ontology(self, *, ontology_id: str, scope: TenantScope | None = None) -> OntologyWorkflow | None:
        return self._latest(scope, lambda row: row.get("ontology_id") == ontology_id)

    def get_latest_by_project(self, *, project_id: str, scope: TenantScope | None = None) -> OntologyWorkflow | None:
        return self._latest(scope, lambda row: row["project_id"] == project_id)

    def get_latest_by_datasource_and_phase(
        self,
        *,
        datasource_id: str,
        phase: WorkflowPhase | str,
        scope: TenantScope | None = None,
    ) -> OntologyWorkflow | None:
        phase_value = WorkflowPhase(phase).value
        return self._latest(
            scope,
            lambda row: row.get("datasource_id") == datasource_id and row.get("phase") == phase_value,
        )

    def update(self, *, workflow: OntologyWorkflow, scope: TenantScope | None = None) -> None:
        row = _to_row(workflow)

        def _changes(_current: dict[str, Any], now: datetime) -> dict[str, Any]:
            values = {column: row[column] for column in _MUTABLE_COLUMNS}
            values["updated_at"] = now
            return values

        found, changed = self._update(scope, workflow.id, _changes)
        _check_guarded_write(found=found, changed=changed, workflow_id=workflow.id, owner_id=None)

    def update_state(
        self,
        *,
        workflow_id: str,
        state: WorkflowState | str,
        error_message: str = "",
        owner_id: str | None = None,
        scope: TenantScope | None = None,
    ) -> None:
        target = WorkflowState(state)

        def _changes(current: dict[str, Any], now: datetime) -> dict[str, Any]:
            completed_at = current.get("completed_at")
            if target.is_terminal() and completed_at is None:
                completed_at = now
            return {
                "state": target.value,
                "error_message": error_message,
                "completed_at": completed_at,
                "updated_at": now,
            }

        found, changed = self._update(scope, workflow_id, _changes, owner_id=owner_id)
        _check_guarded_write(found=found, changed=changed, workflow_id=workflow_id, owner_id=owner_id)

    def update_progress(
        self,
        *,
        workflow_id: str,
        progress: WorkflowProgress | None,
        owner_id: str | None = None,
        scope: TenantScope | None = None,
    ) -> None:
        payload = _dump_progress(progress)
        found, changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"progress": payload, "updated_at": now},
            owner_id=owner_id,
        )
        _check_guarded_write(found=found, changed=changed, workflow_id=workflow_id, owner_id=owner_id)

    def update_task_queue(
        self,
        *,
        workflow_id: str,
        tasks: Sequence[WorkflowTask],
        owner_id: str | None = None,
        scope: TenantScope | None = None,
    ) -> None:
        payload = _dump_tasks(tasks)
        found, changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"task_queue": payload, "updated_at": now},
            owner_id=owner_id,
        )
        _check_guarded_write(found=found, changed=changed, workflow_id=workflow_id, owner_id=owner_id)

    def delete(self, *, workflow_id: str, scope: TenantScope | None = None) -> None:
        deleted = self._tx_runner.run_in_tx(
            scope=scope,
            fn=lambda conn: conn.delete(self._table_name, lambda row: row["id"] == workflow_id),
        )
        if deleted == 0:
            raise NotFoundError(workflow_id=workflow_id)
        _log_deleted(what="workflow_id", key=workflow_id, count=deleted)

    def delete_by_project(self, *, project_id: str, scope: TenantScope | None = None) -> int:
        deleted = self._tx_runner.run_in_tx(
            scope=scope,
            fn=lambda conn: conn.delete(self._table_name, lambda row: row["project_id"] == project_id),
        )
        _log_deleted(what="project_id", key=project_id, count=deleted)
        return deleted

    def claim_ownership(self, *, workflow_id: str, owner_id: str, scope: TenantScope | None = None) -> bool:
        _found, changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"owner_id": owner_id, "last_heartbeat": now, "updated_at": now},
            where=lambda row, _now: row.get("owner_id") in (None, owner_id),
        )
        return _log_claim(claimed=changed, workflow_id=workflow_id, owner_id=owner_id)

    def update_heartbeat(self, *, workflow_id: str, owner_id: str, scope: TenantScope | None = None) -> None:
        _found, changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"last_heartbeat": now, "updated_at": now},
            owner_id=owner_id,
        )
        if not changed:
            logger.warning("workflow_heartbeat_not_owned workflow_id=%s owner_id=%s", workflow_id, owner_id)
            raise NotOwnedError(workflow_id=workflow_id, owner_id=owner_id)

    def release_ownership(self, *, workflow_id: str, scope: TenantScope | None = None) -> None:
        found, _changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"owner_id": None, "last_heartbeat": None, "updated_at": now},
        )
        if not found:
            raise NotFoundError(workflow_id=workflow_id)
        logger.info("workflow_ownership_released workflow_id=%s", workflow_id)

    def release_ownership_if_owner(
        self,
        *,
        workflow_id: str,
        owner_id: str,
        scope: TenantScope | None = None,
    ) -> bool:
        """Clear the lease only while ``owner_id`` still holds it."""
        _found, changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"owner_id": None, "last_heartbeat": None, "updated_at": now},
            owner_id=owner_id,
        )
        return _log_owner_release(released=changed, workflow_id=workflow_id, owner_id=owner_id)

    def list_stale_ownerships(
        self,
        *,
        stale_after_seconds: float,
        limit: int = 100,
        scope: TenantScope | None = None,
    ) -> list[StaleOwnership]:
        def _op(conn: Any) -> list[StaleOwnership]:
            cutoff = conn.now() - timedelta(seconds=stale_after_seconds)
            rows = conn.select(
                self._table_name,
                lambda row: row.get("owner_id") is not None and row["last_heartbeat"] < cutoff,
            )
            rows.sort(key=lambda x: x["last_heartbeat"])
            return [
                StaleOwnership(
                    workflow_id=row["id"],
                    project_id=row["project_id"],
                    owner_id=row["owner_id"],
                    last_heartbeat=row["last_heartbeat"],
                )
                for row in rows[: max(1, min(limit, 1000))]
            ]

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def release_stale_ownership(
        self,
        *,
        workflow_id: str,
        owner_id: str,
        stale_after_seconds: float,
        scope: TenantScope | None = None,
    ) -> bool:
        def _where(row: dict[str, Any], now: datetime) -> bool:
            if row.get("owner_id") != owner_id or row.get("last_heartbeat") is None:
                return False
            return row["last_heartbeat"] < now - timedelta(seconds=stale_after_seconds)

        _found, changed = self._update(
            scope,
            workflow_id,
            lambda _current, now: {"owner_id": None, "last_heartbeat": None, "updated_at": now},
            where=_where,
        )
        return changed

    def list_claimable(self, *, limit: int = 10, scope: TenantScope | None = None) -> list[OntologyWorkflow]:
        def _op(conn: Any) -> list[OntologyWorkflow]:
            rows = conn.select(
                self._table_name,
                lambda row: row.get("owner_id") is None and row["state"] in CLAIMABLE_STATES,
            )
            rows.sort(key=lambda x: x["created_at"])
            return [OntologyWorkflow.model_validate(row) for row in rows[: max(1, min(limit, 1000))]]

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)


class PostgresOntologyWorkflowsRepository:
    """Workflow repository for the postgres backend; tenant filtering comes from RLS on the scope's session."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "ontology_workflows",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._select = f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name}"

    @staticmethod
    def _json(value: Any) -> str | None:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=True, sort_keys=True, default=str)

    @staticmethod
    def _row_to_workflow(row: Sequence[Any]) -> OntologyWorkflow:
        item = dict(zip(_COLUMNS, row))
        for column in ("progress", "task_queue", "config"):
            if isinstance(item[column], str):
                item[column] = json.loads(item[column])
        if item["task_queue"] is None:
            item["task_queue"] = []
        if item["config"] is None:
            item["config"] = {}
        for column in ("id", "project_id", "ontology_id", "datasource_id", "owner_id"):
            if item[column] is not None:
                item[column] = str(item[column])
        return OntologyWorkflow.model_validate(item)

    def _fetch_one(self, scope: TenantScope | None, where: str, params: tuple[Any, ...]) -> OntologyWorkflow | None:
        sql = f"""
            {self._select}
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT 1
        """

        def _op(conn: Any) -> OntologyWorkflow | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_workflow(row)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def _execute_rowcount(self, scope: TenantScope | None, sql: str, params: tuple[Any, ...]) -> int:
        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def _conditional_update(
        self,
        scope: TenantScope | None,
        *,
        workflow_id: str,
        set_clause: str,
        set_params: tuple[Any, ...],
        condition: str,
        condition_params: tuple[Any, ...],
    ) -> tuple[bool, bool]:
        """One statement telling apart "no such row" from "row did not match"."""
        sql = f"""
            WITH target AS (
                SELECT id FROM {self._table_name} WHERE id = %s
            ), changed AS (
                UPDATE {self._table_name}
                SET {set_clause}
                WHERE id = %s AND ({condition})
                RETURNING id
            )
            SELECT EXISTS (SELECT 1 FROM target), EXISTS (SELECT 1 FROM changed)
        """
        params = (workflow_id, *set_params, workflow_id, *condition_params)

        def _op(conn: Any) -> tuple[bool, bool]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            if row is None:
                return False, False
            return bool(row[0]), bool(row[1])

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def _owner_guarded_update(
        self,
        scope: TenantScope | None,
        *,
        workflow_id: str,
        set_clause: str,
        set_params: tuple[Any, ...],
        owner_id: str | None,
    ) -> None:
        if owner_id is None:
            sql = f"UPDATE {self._table_name} SET {set_clause} WHERE id = %s"
            if self._execute_rowcount(scope, sql, (*set_params, workflow_id)) == 0:
                raise NotFoundError(workflow_id=workflow_id)
            return
        found, changed = self._conditional_update(
            scope,
            workflow_id=workflow_id,
            set_clause=set_clause,
            set_params=set_params,
            condition="owner_id = %s",
            condition_params=(owner_id,),
        )
        _check_guarded_write(found=found, changed=changed, workflow_id=workflow_id, owner_id=owner_id)

    def create(self, *, workflow: OntologyWorkflow, scope: TenantScope | None = None) -> OntologyWorkflow:
        row = _to_row(workflow)
        sql = f"""
            INSERT INTO {self._table_name} (
                id, project_id, ontology_id, state, progress, task_queue, config,
                error_message, started_at, completed_at, phase, datasource_id,
                owner_id, last_heartbeat, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
            RETURNING created_at, updated_at
        """
        params = (
            row["id"],
            row["project_id"],
            row["ontology_id"],
            row["state"],
            self._json(row["progress"]),
            self._json(row["task_queue"]),
            self._json(row["config"]),
            row["error_message"],
            row["started_at"],
            row["completed_at"],
            row["phase"],
            row["datasource_id"],
            row["owner_id"],
            row["last_heartbeat"],
        )

        def _op(conn: Any) -> OntologyWorkflow:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                stamps = cur.fetchone()
            if stamps is not None:
                row["created_at"], row["updated_at"] = stamps[0], stamps[1]
            return OntologyWorkflow.model_validate(row)

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def get_by_id(self, *, workflow_id: str, scope: TenantScope | None = None) -> OntologyWorkflow | None:
        return self._fetch_one(scope, "id = %s", (workflow_id,))

    def get_by_ontology(self, *, ontology_id: str, scope: TenantScope | None = None) -> OntologyWorkflow | None:
        return self._fetch_one(scope, "ontology_id = %s", (ontology_id,))

    def get_latest_by_project(self, *, project_id: str, scope: TenantScope | None = None) -> OntologyWorkflow | None:
        return self._fetch_one(scope, "project_id = %s", (project_id,))

    def get_latest_by_datasource_and_phase(
        self,
        *,
        datasource_id: str,
        phase: WorkflowPhase | str,
        scope: TenantScope | None = None,
    ) -> OntologyWorkflow | None:
        return self._fetch_one(
            scope,
            "datasource_id = %s AND phase = %s",
            (datasource_id, WorkflowPhase(phase).value),
        )

    def update(self, *, workflow: OntologyWorkflow, scope: TenantScope | None = None) -> None:
        row = _to_row(workflow)
        sql = f"""
            UPDATE {self._table_name}
            SET ontology_id = %s,
                state = %s,
                progress = %s::jsonb,
                task_queue = %s::jsonb,
                config = %s::jsonb,
                error_message = %s,
                started_at = %s,
                completed_at = %s,
                phase = %s,
                datasource_id = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        params = (
            row["ontology_id"],
            row["state"],
            self._json(row["progress"]),
            self._json(row["task_queue"]),
            self._json(row["config"]),
            row["error_message"],
            row["started_at"],
            row["completed_at"],
            row["phase"],
            row["datasource_id"],
            workflow.id,
        )
        if self._execute_rowcount(scope, sql, params) == 0:
            raise NotFoundError(workflow_id=workflow.id)

    def update_state(
        self,
        *,
        workflow_id: str,
        state: WorkflowState | str,
        error_message: str = "",
        owner_id: str | None = None,
        scope: TenantScope | None = None,
    ) -> None:
        target = WorkflowState(state)
        self._owner_guarded_update(
            scope,
            workflow_id=workflow_id,
            set_clause=(
                "state = %s, error_message = %s, "
                "completed_at = CASE WHEN %s THEN COALESCE(completed_at, NOW()) ELSE completed_at END, "
                "updated_at = NOW()"
            ),
            set_params=(target.value, error_message, target.is_terminal()),
            owner_id=owner_id,
        )

    def update_progress(
        self,
        *,
        workflow_id: str,
        progress: WorkflowProgress | None,
        owner_id: str | None = None,
        scope: TenantScope | None = None,
    ) -> None:
        self._owner_guarded_update(
            scope,
            workflow_id=workflow_id,
            set_clause="progress = %s::jsonb, updated_at = NOW()",
            set_params=(self._json(_dump_progress(progress)),),
            owner_id=owner_id,
        )

    def update_task_queue(
        self,
        *,
        workflow_id: str,
        tasks: Sequence[WorkflowTask],
        owner_id: str | None = None,
        scope: TenantScope | None = None,
    ) -> None:
        self._owner_guarded_update(
            scope,
            workflow_id=workflow_id,
            set_clause="task_queue = %s::jsonb, updated_at = NOW()",
            set_params=(self._json(_dump_tasks(tasks)),),
            owner_id=owner_id,
        )

    def delete(self, *, workflow_id: str, scope: TenantScope | None = None) -> None:
        sql = f"DELETE FROM {self._table_name} WHERE id = %s"
        deleted = self._execute_rowcount(scope, sql, (workflow_id,))
        if deleted == 0:
            raise NotFoundError(workflow_id=workflow_id)
        _log_deleted(what="workflow_id", key=workflow_id, count=deleted)

    def delete_by_project(self, *, project_id: str, scope: TenantScope | None = None) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE project_id = %s"
        deleted = self._execute_rowcount(scope, sql, (project_id,))
        _log_deleted(what="project_id", key=project_id, count=deleted)
        return deleted

    def claim_ownership(self, *, workflow_id: str, owner_id: str, scope: TenantScope | None = None) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET owner_id = %s,
                last_heartbeat = NOW(),
                updated_at = NOW()
            WHERE id = %s AND (owner_id IS NULL OR owner_id = %s)
            RETURNING id
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (owner_id, workflow_id, owner_id))
                return cur.fetchone() is not None

        claimed = self._tx_runner.run_in_tx(scope=scope, fn=_op)
        return _log_claim(claimed=claimed, workflow_id=workflow_id, owner_id=owner_id)

    def update_heartbeat(self, *, workflow_id: str, owner_id: str, scope: TenantScope | None = None) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET last_heartbeat = NOW(),
                updated_at = NOW()
            WHERE id = %s AND owner_id = %s
        """
        if self._execute_rowcount(scope, sql, (workflow_id, owner_id)) == 0:
            logger.warning("workflow_heartbeat_not_owned workflow_id=%s owner_id=%s", workflow_id, owner_id)
            raise NotOwnedError(workflow_id=workflow_id, owner_id=owner_id)

    def release_ownership(self, *, workflow_id: str, scope: TenantScope | None = None) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET owner_id = NULL,
                last_heartbeat = NULL,
                updated_at = NOW()
            WHERE id = %s
        """
        if self._execute_rowcount(scope, sql, (workflow_id,)) == 0:
            raise NotFoundError(workflow_id=workflow_id)
        logger.info("workflow_ownership_released workflow_id=%s", workflow_id)

    def release_ownership_if_owner(
        self,
        *,
        workflow_id: str,
        owner_id: str,
        scope: TenantScope | None = None,
    ) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET owner_id = NULL,
                last_heartbeat = NULL,
                updated_at = NOW()
            WHERE id = %s AND owner_id = %s
        """
        released = self._execute_rowcount(scope, sql, (workflow_id, owner_id)) > 0
        return _log_owner_release(released=released, workflow_id=workflow_id, owner_id=owner_id)

    def list_stale_ownerships(
        self,
        *,
        stale_after_seconds: float,
        limit: int = 100,
        scope: TenantScope | None = None,
    ) -> list[StaleOwnership]:
        sql = f"""
            SELECT id, project_id, owner_id, last_heartbeat
            FROM {self._table_name}
            WHERE owner_id IS NOT NULL
              AND last_heartbeat < NOW() - make_interval(secs => %s)
            ORDER BY last_heartbeat ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[StaleOwnership]:
            with conn.cursor() as cur:
                cur.execute(sql, (float(stale_after_seconds), max(1, min(limit, 1000))))
                rows = cur.fetchall()
            return [
                StaleOwnership(
                    workflow_id=str(row[0]),
                    project_id=str(row[1]),
                    owner_id=str(row[2]),
                    last_heartbeat=row[3],
                )
                for row in rows
            ]

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)

    def release_stale_ownership(
        self,
        *,
        workflow_id: str,
        owner_id: str,
        stale_after_seconds: float,
        scope: TenantScope | None = None,
    ) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET owner_id = NULL,
                last_heartbeat = NULL,
                updated_at = NOW()
            WHERE id = %s
              AND owner_id = %s
              AND last_heartbeat < NOW() - make_interval(secs => %s)
        """
        return self._execute_rowcount(scope, sql, (workflow_id, owner_id, float(stale_after_seconds))) > 0

    def list_claimable(self, *, limit: int = 10, scope: TenantScope | None = None) -> list[OntologyWorkflow]:
        sql = f"""
            {self._select}
            WHERE owner_id IS NULL AND state IN (%s, %s)
            ORDER BY created_at ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[OntologyWorkflow]:
            with conn.cursor() as cur:
                cur.execute(sql, (*CLAIMABLE_STATES, max(1, min(limit, 1000))))
                rows = cur.fetchall()
            return [self._row_to_workflow(row) for row in rows]

        return self._tx_runner.run_in_tx(scope=scope, fn=_op)
