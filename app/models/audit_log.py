from sqlalchemy import Column, Integer, String, Boolean, Text, Index

from app.database import Base, JSONType, UTCDateTime, utcnow


class AuditLogEntry(Base):
    """Immutable record of a lifecycle transition. Never updated or deleted."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    actor = Column(String(128), nullable=False)  # user id, hashed user id after erasure, or 'system'
    action = Column(String(50), nullable=False)  # 'data_export_request', 'account_deleted', ...
    resource_type = Column(String(30), nullable=False)  # 'export', 'deletion', 'dlq', ...
    resource_id = Column(String(128))
    before = Column(JSONType)
    after = Column(JSONType)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_audit_logs_actor", "actor"),
        Index("idx_audit_logs_resource", "resource_type", "resource_id"),
        Index("idx_audit_logs_timestamp", "timestamp"),
    )
