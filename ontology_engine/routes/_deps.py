from __future__ import annotations

import uuid
from collections.abc import Iterator

from fastapi import Request
from fastapi.responses import JSONResponse

from ontology_engine.db.scope import TenantScope
from ontology_engine.errors import EngineError
from ontology_engine.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    raise EngineError(
        code="TENANT_ID_REQUIRED",
        message="x-tenant-id header or tenant claim is required",
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def auth_subject_from_request(request: Request) -> str:
    return str(getattr(request.state, "auth_subject", "") or "anonymous")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
    response.headers["x-trace-id"] = trace_id_from_request(request)
    return response


def tenant_scope(request: Request) -> Iterator[TenantScope]:
    """Request-lifetime tenant scope, released once the response is produced."""
    tenant_id = tenant_id_from_request(request)
    provider = request.app.state.backend.scope_provider
    with provider.scope(tenant_id) as scope:
        yield scope
