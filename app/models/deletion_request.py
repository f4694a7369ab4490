from sqlalchemy import Column, Boolean, String, Text, Index, Uuid

from app.database import Base, JSONType, UTCDateTime, utcnow


DELETION_ACTIVE_STATUSES = ("pending", "scheduled", "processing")


class DeletionRequest(Base):
    """GDPR erasure request with a grace period before the hard delete.

    ``user_id`` has no foreign key. The request outlives the user it erased.
    """

    __tablename__ = "deletion_requests"

    # deletion_<user_id>_<epoch_ms>
    request_id = Column(String(128), primary_key=True)
    user_id = Column(Uuid, nullable=False)
    type = Column(String(10), nullable=False, default="soft")  # 'soft', 'hard'
    scope = Column(JSONType, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    reason = Column(Text)

    requested_at = Column(UTCDateTime, nullable=False, default=utcnow)
    scheduled_at = Column(UTCDateTime, nullable=False)
    can_recover = Column(Boolean, nullable=False, default=False)
    recover_deadline = Column(UTCDateTime)

    cancelled_at = Column(UTCDateTime)
    cancellation_reason = Column(Text)
    processing_started_at = Column(UTCDateTime)
    executed_at = Column(UTCDateTime)
    error = Column(Text)

    # Names of deletion plan steps already applied (resume point after a crash)
    completed_steps = Column(JSONType, default=list)
    certificate_id = Column(String(64))
    task_message_id = Column(String(64))

    __table_args__ = (
        Index("idx_deletion_requests_user_status", "user_id", "status"),
        Index("idx_deletion_requests_status_scheduled", "status", "scheduled_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in DELETION_ACTIVE_STATUSES
