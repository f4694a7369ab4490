from sqlalchemy import Column, Integer, Float, String, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, JSONType, UTCDateTime, utcnow


class TrainingSession(Base):
    """A single workout recorded by the mobile app.

    Completing a session (status -> 'completed') emits a SessionEvent onto the
    analytics stream.
    """

    __tablename__ = "training_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    exercise_type = Column(String(50), nullable=False)  # 'squat', 'pushup', ...
    status = Column(String(20), default="active", nullable=False)  # 'active', 'completed', 'cancelled'

    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime)
    rep_count = Column(Integer, default=0)
    total_score = Column(Float, default=0)
    average_score = Column(Float, default=0)
    duration_seconds = Column(Integer, default=0)

    # {"platform": ..., "osVersion": ..., "model": ...}
    device_info = Column(JSONType)
    average_fps = Column(Float)
    app_version = Column(String(20))

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    completed_at = Column(UTCDateTime)

    # Relationships
    user = relationship("User", back_populates="training_sessions")

    __table_args__ = (
        Index("idx_training_sessions_user_start_time", "user_id", "start_time"),
        Index("idx_training_sessions_status", "status"),
    )
