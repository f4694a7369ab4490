from sqlalchemy import Column, Integer, String, Index, Uuid

from app.database import Base, UTCDateTime, utcnow


class RecoveryCode(Base):
    """Single-use code that cancels a soft deletion during the grace period.

    Only the bcrypt hash of the code is stored.
    """

    __tablename__ = "recovery_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(Uuid, nullable=False)
    deletion_request_id = Column(String(128), nullable=False)
    code_hash = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # 'pending', 'used', 'invalidated', 'expired'
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    used_at = Column(UTCDateTime)

    __table_args__ = (
        Index("idx_recovery_codes_request_status", "deletion_request_id", "status"),
        Index("idx_recovery_codes_user_id", "user_id"),
    )
