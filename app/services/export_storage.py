"""
Object storage for export artifacts.

``ExportStorage`` is the port the export worker talks to. The local
implementation keeps files on disk and hands out HMAC-signed, time-bounded
download links served by ``GET /gdpr/exports/download/{token}``.
"""
import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from app.config import settings
from app.database import utcnow
from app.errors import NotFoundError, PermissionDeniedError, TransientInfraError

logger = logging.getLogger(__name__)


class ExportStorage(ABC):
    """Object store with time-bounded signed URLs."""

    @abstractmethod
    def upload(self, key: str, content: bytes, content_type: str) -> None:
        """Store an artifact. Raises TransientInfraError on I/O failure."""

    @abstractmethod
    def signed_url(self, key: str, expires_at: datetime) -> str:
        """Return a credential-free download URL valid until ``expires_at``."""

    @abstractmethod
    def read(self, key: str) -> bytes:
        """Return artifact bytes. Raises NotFoundError if missing."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove an artifact. Returns False if it did not exist."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every artifact under a key prefix. Returns the count."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class LocalExportStorage(ExportStorage):
    """Filesystem-backed export storage."""

    def __init__(self, base_dir: str | None = None, secret: str | None = None, base_url: str | None = None):
        self.base_dir = Path(base_dir or settings.export_storage_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.secret = (secret or settings.export_url_secret).encode("utf-8")
        self.base_url = (base_url or settings.public_base_url).rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise PermissionDeniedError("Invalid export key")
        return path

    def upload(self, key: str, content: bytes, content_type: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            logger.error("Failed to write export artifact %s: %s", key, e)
            raise TransientInfraError("Export storage unavailable") from e

    def _sign(self, payload: str) -> str:
        return _b64encode(hmac.new(self.secret, payload.encode("utf-8"), hashlib.sha256).digest())

    def make_token(self, key: str, expires_at: datetime) -> str:
        payload = f"{key}|{int(expires_at.timestamp())}"
        return f"{_b64encode(payload.encode('utf-8'))}.{self._sign(payload)}"

    def verify_token(self, token: str, now: datetime | None = None) -> str:
        """
        Check a download token and return the artifact key it grants.

        Raises:
            PermissionDeniedError: if the token is malformed, forged or expired
        """
        try:
            encoded, signature = token.split(".", 1)
            payload = _b64decode(encoded).decode("utf-8")
            key, expiry = payload.rsplit("|", 1)
            expiry_ts = int(expiry)
        except (ValueError, UnicodeDecodeError) as e:
            raise PermissionDeniedError("Invalid download link") from e

        if not hmac.compare_digest(signature, self._sign(payload)):
            raise PermissionDeniedError("Invalid download link")
        if (now or utcnow()).timestamp() >= expiry_ts:
            raise PermissionDeniedError("Download link has expired")
        return key

    def signed_url(self, key: str, expires_at: datetime) -> str:
        return f"{self.base_url}/gdpr/exports/download/{self.make_token(key, expires_at)}"

    def read(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise NotFoundError("Export file", key)
        return path.read_bytes()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def delete_prefix(self, prefix: str) -> int:
        directory = self._path(prefix)
        if not directory.is_dir():
            return 0
        count = 0
        for path in sorted(directory.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
                count += 1
            else:
                path.rmdir()
        directory.rmdir()
        return count


_storage: ExportStorage | None = None


def get_export_storage() -> ExportStorage:
    global _storage
    if _storage is None:
        _storage = LocalExportStorage()
    return _storage
