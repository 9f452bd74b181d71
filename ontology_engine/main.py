from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ontology_engine.backends import EngineBackend, create_backend_from_env
from ontology_engine.errors import EngineError, TenantScopeViolationError
from ontology_engine.routes._deps import error_response, trace_id_from_request
from ontology_engine.routes.workflows import router as workflows_router
from ontology_engine.schemas import success_envelope
from ontology_engine.security import JwtSecurityConfig, parse_and_validate_bearer_token

logger = logging.getLogger(__name__)


def create_app(
    *,
    backend: EngineBackend | None = None,
    security_cfg: JwtSecurityConfig | None = None,
) -> FastAPI:
    app = FastAPI(title="Ontology Engine API", version="0.1.0")
    app.state.backend = backend or create_backend_from_env()
    app.state.security_cfg = security_cfg or JwtSecurityConfig.from_env()
    cfg: JwtSecurityConfig = app.state.security_cfg

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.auth_subject = "anonymous"
        try:
            path = request.url.path
            header_tenant = request.headers.get("x-tenant-id", "").strip()
            if cfg.enabled and path.startswith("/api/v1/") and path != "/api/v1/health":
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=cfg,
                )
                request.state.auth_subject = auth_ctx.subject
                request.state.tenant_id = auth_ctx.tenant_id
                if header_tenant and header_tenant != auth_ctx.tenant_id:
                    raise TenantScopeViolationError("tenant mismatch")
            else:
                request.state.tenant_id = header_tenant or None
            response = await call_next(request)
            response.headers["x-trace-id"] = trace_id_from_request(request)
            return response
        except EngineError as exc:
            logger.warning(
                "request_rejected path=%s code=%s trace_id=%s",
                request.url.path,
                exc.code,
                trace_id_from_request(request),
            )
            return error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )

    @app.exception_handler(EngineError)
    async def handle_engine_error(request: Request, exc: EngineError):
        if exc.http_status >= 500:
            logger.warning("request_failed path=%s code=%s", request.url.path, exc.code)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid request",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "store_backend": app.state.backend.settings.store_backend},
            trace_id_from_request(request),
        )

    app.include_router(workflows_router)
    return app
