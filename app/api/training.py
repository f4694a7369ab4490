"""API endpoints for training sessions."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.models.user import User
from app.services.auth.dependencies import get_current_user
from app.services.session_stream import TrainingSessionService
from app.api.dependencies import get_training_service

router = APIRouter(prefix="/training", tags=["training"])


class SessionResults(BaseModel):
    end_time: Optional[datetime] = None
    rep_count: Optional[int] = Field(None, ge=0)
    total_score: Optional[float] = None
    average_score: Optional[float] = Field(None, ge=0, le=100)
    duration_seconds: Optional[int] = Field(None, ge=0)
    average_fps: Optional[float] = None


@router.post("/sessions/{session_id}/complete")
async def complete_session(
    session_id: str,
    results: SessionResults,
    user: User = Depends(get_current_user),
    training: TrainingSessionService = Depends(get_training_service),
):
    """Mark a session completed and publish it to the analytics stream."""
    return training.complete_session(user, session_id, results.model_dump(exclude_none=True))
