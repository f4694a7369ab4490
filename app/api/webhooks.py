"""Inbound webhooks from third-party services."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.billing import BillingEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class BillingEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    customerId: Optional[str] = None
    subscriptionId: Optional[str] = None
    status: Optional[str] = None
    plan: Optional[str] = None
    currentPeriodStart: Optional[Any] = None
    currentPeriodEnd: Optional[Any] = None
    metadata: dict[str, Any] = {}


@router.post("/billing")
async def billing_webhook(event: BillingEvent, db: Session = Depends(get_db)):
    """Correlate a billing event with a user's subscription."""
    return BillingEventService(db).correlate(event.model_dump())
