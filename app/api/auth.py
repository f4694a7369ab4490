"""Authentication routes: JSON login and logout for the mobile and web clients."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.models.user import User
from app.services.auth import get_identity_provider
from app.services.auth.dependencies import get_current_user

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginBody(BaseModel):
    email: str
    password: str


@router.post("/login")
async def login(body: LoginBody, request: Request, db: Session = Depends(get_db)):
    """
    Exchange credentials for a session token.

    The token is returned in the body for bearer use and set as a cookie for
    browsers.
    """
    provider = get_identity_provider()
    user = provider.authenticate(db, body.email, body.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    token = provider.create_session(db, user, request)
    response = JSONResponse({"token": token, "userId": str(user.id)})
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_max_age,
        httponly=True,
        samesite="lax",
        secure=settings.session_cookie_secure,
    )
    return response


@router.post("/logout")
async def logout(request: Request, db: Session = Depends(get_db)):
    """Revoke the presented session and clear the cookie."""
    provider = get_identity_provider()
    token = provider.token_from_request(request)
    if token:
        provider.revoke_session(db, token)

    response = JSONResponse({"status": "logged_out"})
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return {
        "userId": str(user.id),
        "email": user.email,
        "isAdmin": user.is_admin,
        "deletionScheduled": user.deletion_scheduled,
        "scheduledDeletionAt": user.scheduled_deletion_at.isoformat() if user.scheduled_deletion_at else None,
    }
