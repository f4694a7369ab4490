"""
Billing event correlation.

Billing events carry the provider's customer and subscription ids and, when
the checkout was started from the app, ``metadata.userId``. Events are matched
to a user by subscription id first, then by the metadata user id, then by a
previously seen customer id. Unmatched events are logged and ignored.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.database import utcnow
from app.errors import ValidationError
from app.models import Subscription, User

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "canceled", "unpaid", "incomplete")


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(value)


class BillingEventService:
    def __init__(self, db: Session, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now

    def _resolve_user_id(self, event: dict) -> Optional[UUID]:
        raw = (event.get("metadata") or {}).get("userId")
        if raw:
            try:
                user_id = UUID(str(raw))
            except ValueError:
                logger.warning("Billing event carries malformed userId %r", raw)
            else:
                if self.db.get(User, user_id) is not None:
                    return user_id

        customer_id = event.get("customerId")
        if customer_id:
            known = (
                self.db.query(Subscription.user_id)
                .filter(Subscription.customer_id == customer_id)
                .first()
            )
            if known:
                return known[0]
        return None

    def correlate(self, event: dict) -> dict:
        """
        Apply one billing event to ``subscriptions``.

        Returns:
            {"matched": bool, "subscriptionId": str, "status": str | None}
        """
        subscription_id = event.get("subscriptionId")
        status = event.get("status")
        if not subscription_id:
            raise ValidationError("subscriptionId is required", field="subscriptionId")
        if status not in SUBSCRIPTION_STATUSES:
            raise ValidationError(f"Unknown subscription status: {status}", field="status")

        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.subscription_id == subscription_id)
            .first()
        )
        if subscription is None:
            user_id = self._resolve_user_id(event)
            if user_id is None:
                logger.warning(
                    "Billing event for subscription %s matched no user, ignoring", subscription_id
                )
                return {"matched": False, "subscriptionId": subscription_id, "status": None}
            subscription = Subscription(
                user_id=user_id,
                subscription_id=subscription_id,
                status=status,
                start_date=_timestamp(event.get("currentPeriodStart")) or self.now(),
            )
            self.db.add(subscription)

        subscription.status = status
        subscription.customer_id = event.get("customerId") or subscription.customer_id
        if event.get("plan"):
            subscription.plan = event["plan"]
        if event.get("currentPeriodEnd") is not None:
            subscription.expiration_date = _timestamp(event["currentPeriodEnd"])
        self.db.commit()

        logger.info(
            "Subscription %s for user %s is now %s", subscription_id, subscription.user_id, status
        )
        return {"matched": True, "subscriptionId": subscription_id, "status": status}
