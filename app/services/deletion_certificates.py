"""
Deletion certificates: signed proof that an erasure was carried out.

The signature is HMAC-SHA256 over the canonical JSON of the certified fields,
so anyone holding the signing secret can verify a certificate offline with
``verify_certificate``.
"""

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.errors import NotFoundError
from app.models import DeletionCertificate, DeletionRequest
from app.services.audit_log import hash_user_id

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "HMAC-SHA256"
SIGNED_FIELDS = ("certificateId", "userIdHash", "requestId", "completedAt", "deletedSteps")


def canonical_payload(certificate: dict) -> bytes:
    payload = {name: certificate[name] for name in SIGNED_FIELDS}
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign(certificate: dict, secret: Optional[str] = None) -> str:
    key = (secret or settings.certificate_signing_secret).encode("utf-8")
    return hmac.new(key, canonical_payload(certificate), hashlib.sha256).hexdigest()


def verify_certificate(certificate: dict, secret: Optional[str] = None) -> bool:
    """Offline check of a certificate dict as returned by ``to_dict``."""
    if certificate.get("signatureAlgorithm") != SIGNATURE_ALGORITHM:
        return False
    try:
        expected = sign(certificate, secret)
    except KeyError:
        return False
    return hmac.compare_digest(expected, certificate.get("signature", ""))


def to_dict(certificate: DeletionCertificate) -> dict:
    return {
        "certificateId": certificate.certificate_id,
        "userIdHash": certificate.user_id_hash,
        "requestId": certificate.request_id,
        "completedAt": certificate.completed_at,
        "deletedSteps": list(certificate.deleted_steps),
        "signature": certificate.signature,
        "signatureAlgorithm": certificate.signature_algorithm,
        "issuedAt": certificate.issued_at.isoformat(),
    }


class DeletionCertificateService:
    def __init__(self, db: Session, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now

    def issue(self, request: DeletionRequest, deleted_steps: list[str]) -> DeletionCertificate:
        """Create the certificate for a completed request. Re-issuing returns the existing one."""
        if request.certificate_id:
            existing = self.db.get(DeletionCertificate, request.certificate_id)
            if existing is not None:
                return existing

        issued_at = self.now()
        fields = {
            "certificateId": f"cert_{uuid.uuid4().hex}",
            "userIdHash": hash_user_id(request.user_id),
            "requestId": request.request_id,
            "completedAt": (request.executed_at or issued_at).isoformat(),
            "deletedSteps": list(deleted_steps),
        }
        certificate = DeletionCertificate(
            certificate_id=fields["certificateId"],
            user_id_hash=fields["userIdHash"],
            request_id=fields["requestId"],
            completed_at=fields["completedAt"],
            deleted_steps=fields["deletedSteps"],
            signature=sign(fields),
            signature_algorithm=SIGNATURE_ALGORITHM,
            issued_at=issued_at,
        )
        self.db.add(certificate)
        request.certificate_id = certificate.certificate_id
        logger.info("Deletion certificate %s issued for %s", certificate.certificate_id, request.request_id)
        return certificate

    def get(self, certificate_id: str) -> dict:
        """Certificate as a dict plus a ``valid`` flag from re-checking the signature."""
        certificate = self.db.get(DeletionCertificate, certificate_id)
        if certificate is None:
            raise NotFoundError("Deletion certificate", certificate_id)
        body = to_dict(certificate)
        body["valid"] = verify_certificate(body)
        return body
