"""Append-only audit trail for data-lifecycle transitions."""

import hashlib
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.models import AuditLogEntry

logger = logging.getLogger(__name__)

SENSITIVE_KEY_PARTS = ("password", "token", "secret", "code", "signature")
REDACTED = "[REDACTED]"


def hash_user_id(user_id, salt: Optional[str] = None) -> str:
    """Salted SHA-256 of a user id, used once the user no longer exists."""
    salt = salt if salt is not None else settings.audit_salt
    return hashlib.sha256(f"{salt}{user_id}".encode("utf-8")).hexdigest()


def sanitize(details: Any) -> Any:
    """Recursively redact values whose key looks like a credential."""
    if isinstance(details, dict):
        return {
            key: REDACTED if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS)
            else sanitize(value)
            for key, value in details.items()
        }
    if isinstance(details, list):
        return [sanitize(item) for item in details]
    return details


class AuditLog:
    """
    Writes audit entries into the caller's transaction.

    Entries are only ever inserted. Compliance reporting reads the table
    directly.
    """

    def __init__(self, db: Session, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now

    def record(
        self,
        actor,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor=str(actor),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            before=sanitize(before) if before else None,
            after=sanitize(after) if after else None,
            success=success,
            error_message=error_message,
            timestamp=self.now(),
        )
        self.db.add(entry)
        logger.info(
            "audit %s %s/%s by %s success=%s", action, resource_type, resource_id, actor, success
        )
        return entry

    def entries_for(self, resource_type: str, resource_id: str) -> list[AuditLogEntry]:
        return (
            self.db.query(AuditLogEntry)
            .filter(
                AuditLogEntry.resource_type == resource_type,
                AuditLogEntry.resource_id == resource_id,
            )
            .order_by(AuditLogEntry.timestamp, AuditLogEntry.id)
            .all()
        )
