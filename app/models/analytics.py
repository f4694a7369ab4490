"""
Analytics store tables.

Rows here are pseudonymised: the user id is replaced by a salted SHA-256 hash
before it leaves the operational tables.
"""

from sqlalchemy import (
    Column,
    Integer,
    Float,
    String,
    Boolean,
    Date,
    Index,
    PrimaryKeyConstraint,
)

from app.database import Base, JSONType, UTCDateTime, utcnow


class AnalyticsSession(Base):
    """One row per completed training session, upserted by session_id."""

    __tablename__ = "analytics_training_sessions"

    session_id = Column(String(64), primary_key=True)
    user_id_hash = Column(String(64), nullable=False)
    exercise_id = Column(String(50), nullable=False)
    start_time = Column(UTCDateTime)
    end_time = Column(UTCDateTime)
    duration_seconds = Column(Integer)
    rep_count = Column(Integer)
    average_score = Column(Float)
    device_info = Column(JSONType)
    age_group = Column(String(10), default="unknown")
    country_code = Column(String(2), default="JP")
    source_collection = Column(String(128))
    created_at = Column(UTCDateTime, nullable=False)
    ingested_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(UTCDateTime)

    __table_args__ = (
        Index("idx_analytics_sessions_user_hash", "user_id_hash"),
        Index("idx_analytics_sessions_created_at", "created_at"),
    )


class AggregatedStat(Base):
    """Per-partition aggregate, rebuilt wholesale by the aggregation jobs."""

    __tablename__ = "aggregated_stats"

    period = Column(String(10), nullable=False)  # 'daily', 'weekly'
    stat_date = Column(Date, nullable=False)  # day, or Monday of the week
    exercise_id = Column(String(50), nullable=False)
    segment = Column(String(10), nullable=False)  # age group
    total_sessions = Column(Integer, nullable=False)
    total_users = Column(Integer, nullable=False)
    total_duration_seconds = Column(Integer, nullable=False)
    average_score = Column(Float)
    average_rep_count = Column(Float)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("period", "stat_date", "exercise_id", "segment"),
    )
