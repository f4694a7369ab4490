from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, JSONType, UTCDateTime, utcnow


EXPORT_TERMINAL_STATUSES = ("completed", "failed")


class ExportRequest(Base):
    """GDPR data export (portability) request tracking."""
    __tablename__ = "data_export_requests"

    # export_<user_id>_<epoch_ms>
    request_id = Column(String(128), primary_key=True)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    format = Column(String(10), nullable=False, default='json')  # 'json', 'csv'
    scope = Column(JSONType, nullable=False)  # {"type": "all"} | {"type": "dateRange", ...} | {"type": "specific", ...}
    status = Column(String(20), nullable=False, default='pending')  # 'pending', 'processing', 'completed', 'failed'
    requested_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processing_started_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    attempts = Column(Integer, default=0, nullable=False)

    # Result
    download_ref = Column(String(512))  # Object key in export storage
    expires_at = Column(UTCDateTime)  # Signed URL expiry
    record_count = Column(Integer)
    size_bytes = Column(BigInteger)
    error = Column(Text)

    # Relationships
    user = relationship("User", back_populates="export_requests")

    __table_args__ = (
        Index('idx_data_export_requests_user_requested', 'user_id', 'requested_at'),
        Index('idx_data_export_requests_status', 'status'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in EXPORT_TERMINAL_STATUSES
