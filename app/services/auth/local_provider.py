"""Local password-based identity provider."""
import secrets
from datetime import timedelta
from typing import Optional
from uuid import UUID

import bcrypt
from fastapi import Request
from sqlalchemy.orm import Session as DBSession

from app.config import settings
from app.database import utcnow
from app.models.user import User
from app.models.auth_session import AuthSession
from app.services.auth.base import IdentityProvider


def hash_secret(secret: str) -> str:
    """Hash a password or one-time code using bcrypt."""
    return bcrypt.hashpw(secret.encode('utf-8'), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode('utf-8')


def verify_secret(plain: str, hashed: str) -> bool:
    """Verify a password or one-time code against its bcrypt hash."""
    return bcrypt.checkpw(plain.encode('utf-8'), hashed.encode('utf-8'))


class LocalIdentityProvider(IdentityProvider):
    """
    Identity provider backed by the users and auth_sessions tables.

    Passwords are hashed with bcrypt. Sessions are stored in the database with
    secure random tokens and accepted from either the session cookie or an
    ``Authorization: Bearer`` header (mobile clients).
    """

    def _generate_session_token(self) -> str:
        return secrets.token_urlsafe(32)

    def token_from_request(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get("authorization", "")
        if auth_header.lower().startswith("bearer "):
            return auth_header[7:].strip() or None
        return request.cookies.get(settings.session_cookie_name)

    def authenticate(self, db: DBSession, email: str, password: str) -> Optional[User]:
        user = db.query(User).filter(User.email == email.lower()).first()
        if not user or not user.password_hash:
            return None
        if not verify_secret(password, user.password_hash):
            return None
        return user

    def create_user(
        self,
        db: DBSession,
        email: str,
        password: str,
        is_admin: bool = False
    ) -> User:
        user = User(
            email=email.lower(),
            password_hash=hash_secret(password),
            is_admin=is_admin
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    def get_user_from_request(self, db: DBSession, request: Request) -> Optional[User]:
        token = self.token_from_request(request)
        if not token:
            return None

        session = db.query(AuthSession).filter(
            AuthSession.token == token,
            AuthSession.expires_at > utcnow()
        ).first()
        if not session:
            return None

        user = session.user
        if user.force_logout_at and session.created_at <= user.force_logout_at:
            return None
        return user

    def create_session(self, db: DBSession, user: User, request: Request) -> str:
        token = self._generate_session_token()
        now = utcnow()
        session = AuthSession(
            user_id=user.id,
            token=token,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.session_max_age),
            user_agent=request.headers.get("user-agent", "")[:512],
        )
        db.add(session)
        db.commit()
        return token

    def revoke_session(self, db: DBSession, token: str) -> bool:
        session = db.query(AuthSession).filter(AuthSession.token == token).first()
        if not session:
            return False
        db.delete(session)
        db.commit()
        return True

    def revoke_all_sessions(self, db: DBSession, user_id: UUID) -> int:
        return (
            db.query(AuthSession)
            .filter(AuthSession.user_id == user_id)
            .delete(synchronize_session=False)
        )


# Singleton instance
local_identity_provider = LocalIdentityProvider()
