"""
Error taxonomy for the data-lifecycle pipeline.

API handlers let these propagate; ``app.main`` turns them into JSON responses
with the matching status code. Workers only ever raise
``TransientInfraError`` (retried by the task queue); permanent outcomes are
returned as ``Permanent`` job results and persisted on the request or message
for operator triage.
"""
from typing import Optional


class LifecycleError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal"

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(LifecycleError):
    """Bad input. Never retried."""

    status_code = 400
    code = "invalid-argument"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class RateLimitError(LifecycleError):
    status_code = 429
    code = "resource-exhausted"

    def __init__(self, message: str = "Too many requests", retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


class NotFoundError(LifecycleError):
    status_code = 404
    code = "not-found"

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class PermissionDeniedError(LifecycleError):
    """Caller does not own the resource."""

    status_code = 403
    code = "permission-denied"

    def __init__(self, message: str = "You do not have access to this request"):
        super().__init__(message)


class ConflictError(LifecycleError):
    """State precondition failed (e.g. a deletion is already active)."""

    status_code = 409
    code = "failed-precondition"

    def __init__(self, message: str, request_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id
        self.status = status

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.request_id:
            body["request_id"] = self.request_id
            body["status"] = self.status
        return body


class TransientInfraError(LifecycleError):
    """Store, queue or object storage hiccup. Safe to retry."""

    status_code = 503
    code = "unavailable"

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message)
