from __future__ import annotations


class EngineError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class MissingScopeError(EngineError):
    """Raised before any round trip when no live tenant scope is available."""

    def __init__(self, message: str = "tenant scope not found in context") -> None:
        super().__init__(
            code="TENANT_SCOPE_MISSING",
            message=message,
            error_class="programming",
            retryable=False,
            http_status=500,
        )


class TenantScopeViolationError(EngineError):
    def __init__(self, message: str = "tenant scope mismatch") -> None:
        super().__init__(
            code="TENANT_SCOPE_VIOLATION",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class NotFoundError(EngineError):
    def __init__(self, *, workflow_id: str) -> None:
        super().__init__(
            code="WORKFLOW_NOT_FOUND",
            message=f"workflow not found: {workflow_id}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.workflow_id = workflow_id


class NotOwnedError(EngineError):
    """The caller's owner id no longer matches the stored owner (or the row is gone)."""

    def __init__(self, *, workflow_id: str, owner_id: str) -> None:
        super().__init__(
            code="WORKFLOW_NOT_OWNED",
            message=f"workflow {workflow_id} is not owned by {owner_id}",
            error_class="ownership",
            retryable=False,
            http_status=409,
        )
        self.workflow_id = workflow_id
        self.owner_id = owner_id


class StorageUnavailableError(EngineError, ConnectionError):
    def __init__(self, message: str = "storage unavailable") -> None:
        super().__init__(
            code="STORAGE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


class DeadlineExceededError(EngineError, TimeoutError):
    def __init__(self, message: str = "deadline exceeded before storage call completed") -> None:
        super().__init__(
            code="STORAGE_DEADLINE_EXCEEDED",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=504,
        )
