"""Abstract base class for identity providers."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.orm import Session as DBSession

from app.models.user import User


@dataclass
class CallerIdentity:
    """Authenticated caller as seen by the lifecycle services."""

    user_id: UUID
    email: Optional[str] = None
    claims: dict = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return bool(self.claims.get("admin"))


class IdentityProvider(ABC):
    """
    Abstract identity provider interface.

    Routes depend on this rather than on a concrete session store so that the
    local password provider can be swapped for an external one without
    touching the lifecycle code.
    """

    @abstractmethod
    def authenticate(self, db: DBSession, email: str, password: str) -> Optional[User]:
        """
        Authenticate user with email and password.

        Returns User if credentials are valid, None otherwise.
        """

    @abstractmethod
    def create_user(
        self,
        db: DBSession,
        email: str,
        password: str,
        is_admin: bool = False
    ) -> User:
        """Create a new user with the given credentials."""

    @abstractmethod
    def token_from_request(self, request: Request) -> Optional[str]:
        """Session token presented by the request, if any."""

    @abstractmethod
    def get_user_from_request(self, db: DBSession, request: Request) -> Optional[User]:
        """
        Extract and validate the user from a session cookie or bearer token.

        Sessions issued before the user's ``force_logout_at`` are rejected.
        """

    @abstractmethod
    def create_session(self, db: DBSession, user: User, request: Request) -> str:
        """Create a new session for the user. Returns the session token."""

    @abstractmethod
    def revoke_session(self, db: DBSession, token: str) -> bool:
        """Revoke a session by its token. Returns False if not found."""

    @abstractmethod
    def revoke_all_sessions(self, db: DBSession, user_id: UUID) -> int:
        """
        Revoke every session of a user.

        Does not commit; the caller owns the transaction. Returns the count of
        sessions revoked.
        """

    def identity_for(self, user: User) -> CallerIdentity:
        return CallerIdentity(
            user_id=user.id,
            email=user.email,
            claims={"admin": bool(user.is_admin)},
        )
