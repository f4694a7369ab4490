"""
Recovery codes for cancelling a soft deletion during the grace period.

A code is six digits, shown to the user once and stored only as a bcrypt hash.
Issuing a new code invalidates the previous one. Five wrong guesses
invalidate the code.
"""

import logging
import secrets
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.models import RecoveryCode
from app.services.auth.local_provider import hash_secret, verify_secret

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


class CodeCheck(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    LOCKED = "locked"
    MISSING = "missing"


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


class RecoveryCodeService:
    """Issues and checks recovery codes. Callers own the transaction."""

    def __init__(self, db: Session, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now

    def _pending(self, deletion_request_id: str):
        return self.db.query(RecoveryCode).filter(
            RecoveryCode.deletion_request_id == deletion_request_id,
            RecoveryCode.status == "pending",
        )

    def invalidate_all(self, deletion_request_id: str) -> int:
        return self._pending(deletion_request_id).update(
            {RecoveryCode.status: "invalidated"}, synchronize_session=False
        )

    def issue(self, user_id, deletion_request_id: str, expires_at: datetime) -> str:
        """Create a new code for the request and return it in plain text."""
        self.invalidate_all(deletion_request_id)
        code = generate_code()
        self.db.add(
            RecoveryCode(
                user_id=user_id,
                deletion_request_id=deletion_request_id,
                code_hash=hash_secret(code),
                status="pending",
                attempts=0,
                max_attempts=settings.recovery_code_max_attempts,
                created_at=self.now(),
                expires_at=expires_at,
            )
        )
        self.db.flush()
        logger.info("Recovery code issued for deletion %s", deletion_request_id)
        return code

    def verify(self, deletion_request_id: str, code: Optional[str]) -> CodeCheck:
        """
        Check a code against the request's pending code.

        A valid code is consumed. Every wrong guess counts an attempt; the
        code is invalidated once ``max_attempts`` is reached. Changes are
        flushed so a later check in the same transaction sees them.
        """
        record: Optional[RecoveryCode] = (
            self._pending(deletion_request_id).order_by(RecoveryCode.created_at.desc()).first()
        )
        if record is None or record.status != "pending":
            return CodeCheck.MISSING

        result = self._check(record, deletion_request_id, code)
        self.db.flush()
        return result

    def _check(self, record: RecoveryCode, deletion_request_id: str, code: Optional[str]) -> CodeCheck:
        now = self.now()
        if record.expires_at <= now:
            record.status = "expired"
            return CodeCheck.EXPIRED

        record.attempts += 1
        if code and verify_secret(code.strip(), record.code_hash):
            record.status = "used"
            record.used_at = now
            return CodeCheck.VALID

        if record.attempts >= record.max_attempts:
            record.status = "invalidated"
            logger.warning(
                "Recovery code for deletion %s locked after %d attempts",
                deletion_request_id, record.attempts,
            )
            return CodeCheck.LOCKED

        logger.warning(
            "Invalid recovery code for deletion %s (attempt %d/%d)",
            deletion_request_id, record.attempts, record.max_attempts,
        )
        return CodeCheck.INVALID
