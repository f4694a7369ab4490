"""API endpoints for data export and deletion requests."""

import mimetypes
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel

from app.models.user import User
from app.services.auth.dependencies import get_current_user
from app.services.deletion_service import DeletionOrchestrator
from app.services.export_service import ExportOrchestrator
from app.services.export_storage import ExportStorage, get_export_storage
from app.api.dependencies import get_deletion_orchestrator, get_export_orchestrator

router = APIRouter(prefix="/gdpr", tags=["gdpr"])


class ExportRequestBody(BaseModel):
    format: Optional[str] = None
    scope: Optional[dict[str, Any]] = None


class DeletionRequestBody(BaseModel):
    type: Optional[str] = None
    scope: Optional[dict[str, Any]] = None
    reason: Optional[str] = None


class CancelDeletionBody(BaseModel):
    recoveryCode: Optional[str] = None
    reason: Optional[str] = None


class RecoverAccountBody(BaseModel):
    email: str
    recoveryCode: str


# =============================================================================
# Exports
# =============================================================================


@router.post("/exports", status_code=202)
async def request_export(
    body: ExportRequestBody,
    user: User = Depends(get_current_user),
    exports: ExportOrchestrator = Depends(get_export_orchestrator),
):
    """Start a data export. Limited to one per 24 hours."""
    return exports.request_export(user.id, format=body.format, scope=body.scope)


@router.get("/exports")
async def list_exports(
    limit: int = Query(10),
    user: User = Depends(get_current_user),
    exports: ExportOrchestrator = Depends(get_export_orchestrator),
):
    return {"requests": exports.list_export_requests(user.id, limit=limit)}


@router.get("/exports/download/{token}")
async def download_export(token: str, storage: ExportStorage = Depends(get_export_storage)):
    """Serve an export artifact. The signed token is the only credential."""
    key = storage.verify_token(token)
    content = storage.read(key)
    filename = key.rsplit("/", 1)[-1]
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/exports/{request_id}")
async def get_export(
    request_id: str,
    user: User = Depends(get_current_user),
    exports: ExportOrchestrator = Depends(get_export_orchestrator),
):
    return exports.get_export_status(request_id, user.id)


# =============================================================================
# Deletions
# =============================================================================


@router.post("/deletions", status_code=202)
async def request_deletion(
    body: DeletionRequestBody,
    user: User = Depends(get_current_user),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    """
    Schedule a deletion after the 30-day grace period.

    Soft deletions return a one-time recovery code; it is not shown again.
    """
    return deletions.request_deletion(user.id, type=body.type, scope=body.scope, reason=body.reason)


@router.get("/deletions")
async def get_deletions(
    latest: bool = Query(False),
    limit: int = Query(10),
    user: User = Depends(get_current_user),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    """The caller's latest active request with ``latest=true``, otherwise their history."""
    if latest:
        return {"request": deletions.get_deletion_status(user.id)}
    return {"requests": deletions.list_deletion_requests(user.id, limit=limit)}


@router.get("/deletions/{request_id}")
async def get_deletion(
    request_id: str,
    user: User = Depends(get_current_user),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    return deletions.get_deletion_status(user.id, request_id)


@router.post("/deletions/{request_id}/cancel")
async def cancel_deletion(
    request_id: str,
    body: CancelDeletionBody,
    user: User = Depends(get_current_user),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    return deletions.cancel_deletion(
        request_id, user.id, recovery_code=body.recoveryCode, reason=body.reason
    )


@router.post("/deletions/{request_id}/recovery-code")
async def reissue_recovery_code(
    request_id: str,
    user: User = Depends(get_current_user),
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    return deletions.reissue_recovery_code(request_id, user.id)


@router.post("/recover")
async def recover_account(
    body: RecoverAccountBody,
    deletions: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    """Cancel a soft deletion without signing in (sessions were revoked)."""
    return deletions.recover_account(body.email, body.recoveryCode)
