from sqlalchemy import Column, String, Integer, Numeric, Boolean, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from app.database import Base, UTCDateTime


class User(Base):
    """User profile, data ownership root and lifecycle flags."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=True)
    password_hash = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)

    # Profile
    nickname = Column(String(100))
    birth_year = Column(Integer)
    gender = Column(String(50))  # Free-text for inclusivity
    height_cm = Column(Numeric(5, 1))
    weight_kg = Column(Numeric(5, 1))
    fitness_level = Column(String(20))  # 'beginner', 'intermediate', 'advanced'
    country_code = Column(String(2), default="JP")

    # Data lifecycle
    deletion_scheduled = Column(Boolean, default=False, nullable=False)
    scheduled_deletion_at = Column(UTCDateTime)
    force_logout_at = Column(UTCDateTime)  # Sessions issued before this are invalid
    active_deletion_request_id = Column(String(128), nullable=True)  # Single active deletion slot
    last_export_requested_at = Column(UTCDateTime)  # Export window guard

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    # Relationships
    auth_sessions = relationship(
        "AuthSession", back_populates="user", cascade="all, delete-orphan"
    )
    training_sessions = relationship(
        "TrainingSession", back_populates="user", cascade="all, delete-orphan"
    )
    consents = relationship(
        "Consent", back_populates="user", cascade="all, delete-orphan"
    )
    settings = relationship(
        "UserSettings",
        back_populates="user",
        cascade="all, delete-orphan",
        uselist=False,
    )
    subscriptions = relationship(
        "Subscription", back_populates="user", cascade="all, delete-orphan"
    )
    export_requests = relationship(
        "ExportRequest", back_populates="user", cascade="all, delete-orphan"
    )
