from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String

from landlordhub_billing.models.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back naive; they are always stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionRecord(Base):
    """
    A user's subscription as last reconciled with Stripe.

    One row per user. A row without stripe_subscription_id is provisional:
    written at checkout and upgraded in place by the webhook.
    """
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, unique=True, nullable=False, index=True)

    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)

    plan = Column(String, nullable=False, default='free')  # free | starter | growth | pro
    status = Column(String, nullable=False, default='incomplete')
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_provisional(self) -> bool:
        return self.stripe_subscription_id is None

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, plan={self.plan}, status={self.status}, "
            f"subscription={self.stripe_subscription_id})>"
        )
