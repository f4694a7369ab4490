"""
Collects everything a user owns across the domain tables for a data export.

Every value leaving this module is JSON-native: datetimes become ISO-8601
strings, decimals become floats, UUIDs become strings.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Consent, Subscription, TrainingSession, User, UserSettings
from app.services.request_validator import AllScope, DateRangeScope, SpecificExportScope


DATA_DOMAINS = ("profile", "sessions", "consents", "settings", "subscriptions")

# Column order for each domain; the CSV formatter relies on it being stable
PROFILE_FIELDS = (
    "user_id", "email", "nickname", "birth_year", "gender", "height_cm",
    "weight_kg", "fitness_level", "country_code", "created_at", "updated_at",
)
SESSION_FIELDS = (
    "session_id", "exercise_type", "status", "start_time", "end_time",
    "rep_count", "total_score", "average_score", "duration_seconds",
    "average_fps", "app_version", "device_info", "created_at", "completed_at",
)
CONSENT_FIELDS = ("document_type", "document_version", "action", "timestamp")
SETTINGS_FIELDS = (
    "notifications_enabled", "reminder_time", "reminder_days", "language",
    "theme", "units", "analytics_enabled", "crash_reporting_enabled", "updated_at",
)
SUBSCRIPTION_FIELDS = (
    "plan", "status", "store", "subscription_id", "start_date", "expiration_date",
)


def serialize_value(value: Any) -> Any:
    """Convert ORM values into JSON-native values."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def _row(obj, fields: tuple, renames: Optional[dict] = None) -> dict:
    renames = renames or {}
    return {
        name: serialize_value(getattr(obj, renames.get(name, name)))
        for name in fields
    }


class DataCollector:
    """Reads a user's records from every domain table."""

    def __init__(self, db: Session):
        self.db = db

    def collect(self, user_id, scope=None) -> dict:
        """
        Collect the user's data for the given scope.

        Missing sub-records yield ``None`` (profile, settings) or ``[]``.
        Database errors propagate so the export fails as a whole.
        """
        scope = scope or AllScope()
        if isinstance(scope, SpecificExportScope):
            domains = [d for d in DATA_DOMAINS if d in scope.data_types]
        else:
            domains = list(DATA_DOMAINS)

        readers = {
            "profile": lambda: self.get_profile(user_id),
            "sessions": lambda: self.get_sessions(user_id, scope),
            "consents": lambda: self.get_consents(user_id),
            "settings": lambda: self.get_settings(user_id),
            "subscriptions": lambda: self.get_subscriptions(user_id),
        }
        return {domain: readers[domain]() for domain in domains}

    def get_profile(self, user_id) -> Optional[dict]:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            return None
        return _row(user, PROFILE_FIELDS, {"user_id": "id"})

    def get_sessions(self, user_id, scope=None) -> list[dict]:
        query = self.db.query(TrainingSession).filter(TrainingSession.user_id == user_id)
        if isinstance(scope, DateRangeScope):
            if scope.start_date:
                query = query.filter(TrainingSession.start_time >= scope.start_date)
            if scope.end_date:
                query = query.filter(TrainingSession.start_time <= scope.end_date)
        sessions = query.order_by(TrainingSession.start_time.desc()).all()
        return [_row(s, SESSION_FIELDS, {"session_id": "id"}) for s in sessions]

    def get_consents(self, user_id) -> list[dict]:
        consents = (
            self.db.query(Consent)
            .filter(Consent.user_id == user_id)
            .order_by(Consent.timestamp.desc())
            .all()
        )
        return [_row(c, CONSENT_FIELDS) for c in consents]

    def get_settings(self, user_id) -> Optional[dict]:
        user_settings = (
            self.db.query(UserSettings).filter(UserSettings.user_id == user_id).first()
        )
        if not user_settings:
            return None
        return _row(user_settings, SETTINGS_FIELDS)

    def get_subscriptions(self, user_id) -> list[dict]:
        subscriptions = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )
        return [_row(s, SUBSCRIPTION_FIELDS) for s in subscriptions]


def count_records(data: dict) -> int:
    """Number of exported records: one per singular domain present plus list lengths."""
    total = 0
    for domain in ("profile", "settings"):
        if data.get(domain):
            total += 1
    for domain in ("sessions", "consents", "subscriptions"):
        total += len(data.get(domain) or [])
    return total
