from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from landlordhub_billing.config import Settings
from landlordhub_billing.models.base import get_db
from landlordhub_billing.stripe_integration import StripeIntegration
from landlordhub_billing.subscription_store import SubscriptionStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(db: Session = Depends(get_db)) -> SubscriptionStore:
    return SubscriptionStore(db)


def get_optional_stripe_integration(request: Request) -> Optional[StripeIntegration]:
    return request.app.state.stripe_integration


def get_stripe_integration(
    stripe_integration: Optional[StripeIntegration] = Depends(get_optional_stripe_integration),
) -> StripeIntegration:
    if stripe_integration is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe not configured")
    return stripe_integration
