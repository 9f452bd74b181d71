from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from ontology_engine.db.context import Provenance, bind_provenance
from ontology_engine.db.scope import TenantScope
from ontology_engine.errors import EngineError, NotFoundError
from ontology_engine.models import WorkflowPhase
from ontology_engine.routes._deps import auth_subject_from_request, tenant_scope, trace_id_from_request
from ontology_engine.schemas import WorkflowView, success_envelope

router = APIRouter(prefix="/api/v1", tags=["workflows"])


def _view(workflow) -> dict[str, object] | None:
    if workflow is None:
        return None
    return WorkflowView.from_workflow(workflow).model_dump(mode="json")


@router.get("/workflows/latest")
def get_latest_workflow(
    request: Request,
    datasource_id: str | None = Query(default=None),
    phase: str | None = Query(default=None),
    scope: TenantScope = Depends(tenant_scope),
):
    workflows = request.app.state.backend.workflows
    if datasource_id:
        try:
            phase_value = WorkflowPhase(phase or WorkflowPhase.ONTOLOGY.value)
        except ValueError:
            raise EngineError(
                code="REQ_VALIDATION_FAILED",
                message=f"unsupported workflow phase: {phase}",
                error_class="validation",
                retryable=False,
                http_status=400,
            ) from None
        workflow = workflows.get_latest_by_datasource_and_phase(
            datasource_id=datasource_id,
            phase=phase_value,
            scope=scope,
        )
    else:
        # The tenant is the project.
        workflow = workflows.get_latest_by_project(project_id=scope.tenant_id, scope=scope)
    return success_envelope(_view(workflow), trace_id_from_request(request))


@router.get("/ontologies/{ontology_id}/workflow")
def get_ontology_workflow(
    ontology_id: str,
    request: Request,
    scope: TenantScope = Depends(tenant_scope),
):
    workflow = request.app.state.backend.workflows.get_by_ontology(ontology_id=ontology_id, scope=scope)
    return success_envelope(_view(workflow), trace_id_from_request(request))


@router.get("/workflows/{workflow_id}")
def get_workflow(
    workflow_id: str,
    request: Request,
    scope: TenantScope = Depends(tenant_scope),
):
    workflow = request.app.state.backend.workflows.get_by_id(workflow_id=workflow_id, scope=scope)
    if workflow is None:
        raise NotFoundError(workflow_id=workflow_id)
    return success_envelope(_view(workflow), trace_id_from_request(request))


@router.delete("/workflows/{workflow_id}")
def delete_workflow(
    workflow_id: str,
    request: Request,
    scope: TenantScope = Depends(tenant_scope),
):
    with bind_provenance(Provenance("manual", auth_subject_from_request(request))):
        request.app.state.backend.workflows.delete(workflow_id=workflow_id, scope=scope)
    return success_envelope({"workflow_id": workflow_id, "deleted": True}, trace_id_from_request(request))
