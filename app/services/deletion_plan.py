"""
The cascade that erases a user, as data.

``DELETION_PLAN`` lists every place user data lives, in the order it is
removed. The user row goes last. Each step name is appended to the request's
``completed_steps`` as soon as its transaction commits; a rerun skips those.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models import (
    AnalyticsSession,
    AuditLogEntry,
    AuthSession,
    Consent,
    DeletionRequest,
    ExportRequest,
    RecoveryCode,
    Subscription,
    TrainingSession,
    User,
    UserSettings,
)
from app.services.audit_log import hash_user_id
from app.services.export_storage import ExportStorage
from app.services.request_validator import SpecificDeletionScope, parse_deletion_scope
from app.services.session_stream import pseudonymize_user_id

logger = logging.getLogger(__name__)


@dataclass
class DeletionContext:
    db: Session
    user_id: object
    storage: Optional[ExportStorage] = None

    def owner_key(self, owner: str):
        if owner == "analytics_hash":
            return pseudonymize_user_id(self.user_id)
        return self.user_id


@dataclass(frozen=True)
class TableStep:
    """Delete every row of ``model`` whose ``column`` matches the user."""

    name: str
    model: type
    column: str = "user_id"
    owner: str = "user_id"
    data_type: Optional[str] = None

    def _query(self, ctx: DeletionContext):
        return ctx.db.query(self.model).filter(
            getattr(self.model, self.column) == ctx.owner_key(self.owner)
        )

    def execute(self, ctx: DeletionContext) -> int:
        return self._query(ctx).delete(synchronize_session=False)

    def remaining(self, ctx: DeletionContext) -> int:
        return self._query(ctx).count()


@dataclass(frozen=True)
class AuditActorStep:
    """Replace the raw user id in audit entries with its salted hash."""

    name: str = "audit_actor_ids"
    data_type: Optional[str] = None

    def execute(self, ctx: DeletionContext) -> int:
        result = ctx.db.execute(
            update(AuditLogEntry)
            .where(AuditLogEntry.actor == str(ctx.user_id))
            .values(actor=hash_user_id(ctx.user_id))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def remaining(self, ctx: DeletionContext) -> int:
        return ctx.db.query(AuditLogEntry).filter(AuditLogEntry.actor == str(ctx.user_id)).count()


@dataclass(frozen=True)
class ExportArtifactStep:
    """Remove the user's export files from object storage."""

    name: str = "export_artifacts"
    data_type: Optional[str] = None

    def execute(self, ctx: DeletionContext) -> int:
        if ctx.storage is None:
            return 0
        return ctx.storage.delete_prefix(str(ctx.user_id))

    def remaining(self, ctx: DeletionContext) -> int:
        return 0


DELETION_PLAN = (
    TableStep("training_sessions", TrainingSession, data_type="sessions"),
    TableStep(
        "analytics_sessions", AnalyticsSession,
        column="user_id_hash", owner="analytics_hash", data_type="sessions",
    ),
    TableStep("consents", Consent, data_type="consents"),
    TableStep("user_settings", UserSettings, data_type="settings"),
    TableStep("subscriptions", Subscription, data_type="subscriptions"),
    TableStep("auth_sessions", AuthSession),
    ExportArtifactStep(),
    TableStep("export_requests", ExportRequest),
    TableStep("recovery_codes", RecoveryCode),
    AuditActorStep(),
    TableStep("user_profile", User, column="id"),
)


def steps_for(scope) -> list:
    """Steps that apply to a deletion scope (stored dict or parsed model)."""
    parsed = parse_deletion_scope(scope)
    if isinstance(parsed, SpecificDeletionScope):
        return [step for step in DELETION_PLAN if step.data_type in parsed.data_types]
    return list(DELETION_PLAN)


class DeletionPlanExecutor:
    """Runs the plan for one request, one committed step at a time."""

    def __init__(self, db: Session, storage: Optional[ExportStorage] = None):
        self.db = db
        self.storage = storage
        self.current_step: Optional[str] = None

    def run(self, request: DeletionRequest) -> dict:
        """
        Execute every pending step of the plan.

        Returns:
            Mapping of step name to rows/files removed in this run

        Raises:
            Exception from the failing step; the steps before it stay recorded
            in ``completed_steps``.
        """
        ctx = DeletionContext(db=self.db, user_id=request.user_id, storage=self.storage)
        done = list(request.completed_steps or [])
        counts = {}

        for step in steps_for(request.scope):
            if step.name in done:
                continue
            self.current_step = step.name
            counts[step.name] = step.execute(ctx)
            done.append(step.name)
            request.completed_steps = list(done)
            self.db.commit()
            logger.info(
                "Deletion %s: step %s removed %d", request.request_id, step.name, counts[step.name]
            )

        return counts

    def verify(self, request: DeletionRequest) -> dict:
        """Rows still present per step; empty when the cascade is complete."""
        ctx = DeletionContext(db=self.db, user_id=request.user_id, storage=self.storage)
        leftovers = {}
        for step in steps_for(request.scope):
            remaining = step.remaining(ctx)
            if remaining:
                leftovers[step.name] = remaining
        return leftovers
