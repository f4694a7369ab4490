from sqlalchemy import Column, String, Index

from app.database import Base, JSONType, UTCDateTime


class DeletionCertificate(Base):
    """Signed proof that an erasure request was carried out."""

    __tablename__ = "deletion_certificates"

    certificate_id = Column(String(64), primary_key=True)
    user_id_hash = Column(String(64), nullable=False)
    request_id = Column(String(128), nullable=False)
    completed_at = Column(String(40), nullable=False)  # ISO-8601, exactly as signed
    deleted_steps = Column(JSONType, nullable=False)
    signature = Column(String(128), nullable=False)
    signature_algorithm = Column(String(20), nullable=False, default="HMAC-SHA256")
    issued_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_deletion_certificates_user_hash", "user_id_hash"),
        Index("idx_deletion_certificates_request_id", "request_id"),
    )
