"""Login session model backing the identity provider."""

from sqlalchemy import Column, Integer, String, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, UTCDateTime, utcnow


class AuthSession(Base):
    """Opaque bearer/cookie token issued to a signed-in user.

    Rows are deleted when a deletion request revokes the user's sessions.
    """

    __tablename__ = "auth_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token = Column(String(64), unique=True, index=True, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    user_agent = Column(String(512), nullable=True)

    # Relationships
    user = relationship("User", back_populates="auth_sessions")
