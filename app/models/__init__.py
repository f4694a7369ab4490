"""
Database models for the fitness data-lifecycle backend.

Import all models here so Alembic can detect them for migrations.
"""

from app.database import Base
from app.models.user import User
from app.models.auth_session import AuthSession
from app.models.training_session import TrainingSession
from app.models.consent import Consent
from app.models.user_settings import UserSettings
from app.models.subscription import Subscription
from app.models.data_export import ExportRequest
from app.models.deletion_request import DeletionRequest
from app.models.recovery_code import RecoveryCode
from app.models.deletion_certificate import DeletionCertificate
from app.models.audit_log import AuditLogEntry
from app.models.analytics import AnalyticsSession, AggregatedStat

__all__ = [
    "Base",
    "User",
    "AuthSession",
    "TrainingSession",
    "Consent",
    "UserSettings",
    "Subscription",
    "ExportRequest",
    "DeletionRequest",
    "RecoveryCode",
    "DeletionCertificate",
    "AuditLogEntry",
    "AnalyticsSession",
    "AggregatedStat",
]
