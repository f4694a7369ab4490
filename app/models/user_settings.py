from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.database import Base, JSONType, UTCDateTime


class UserSettings(Base):
    """Per-user app preferences, including notification settings."""
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    # Notifications
    notifications_enabled = Column(Boolean, default=True)
    reminder_time = Column(String(5))  # "HH:MM"
    reminder_days = Column(JSONType)  # [1, 3, 5] (ISO weekday numbers)

    # Display
    language = Column(String(10), default="ja")
    theme = Column(String(10), default="system")
    units = Column(String(10), default="metric")

    # Telemetry preferences
    analytics_enabled = Column(Boolean, default=True)
    crash_reporting_enabled = Column(Boolean, default=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="settings")

    __table_args__ = (
        UniqueConstraint('user_id', name='uq_user_settings_user_id'),
    )
