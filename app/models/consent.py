from sqlalchemy import Column, Integer, String, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, UTCDateTime, utcnow


class Consent(Base):
    """Append-only record of a user accepting or withdrawing a legal document."""

    __tablename__ = "consents"

    id = Column(Integer, primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    document_type = Column(String(50), nullable=False)  # 'tos', 'privacy_policy'
    document_version = Column(String(20), nullable=False)
    action = Column(String(20), nullable=False)  # 'accept', 'withdraw'
    timestamp = Column(UTCDateTime, default=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="consents")

    __table_args__ = (
        Index("idx_consents_user_id", "user_id"),
    )
