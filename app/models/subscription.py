from sqlalchemy import Column, Integer, String, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, UTCDateTime, utcnow


class Subscription(Base):
    """Billing subscription, correlated from billing events by subscription id."""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan = Column(String(50), default="premium")
    status = Column(String(30), nullable=False)  # 'trialing', 'active', 'past_due', 'canceled'
    store = Column(String(20), default="stripe")
    customer_id = Column(String(255))
    subscription_id = Column(String(255), unique=True)
    start_date = Column(UTCDateTime)
    expiration_date = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        Index("idx_subscriptions_user_id", "user_id"),
    )
