import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from landlordhub_billing.auth import AuthenticatedUser, get_current_user
from landlordhub_billing.checkout import PortalRedirect, create_checkout_session, create_portal_session
from landlordhub_billing.config import Settings
from landlordhub_billing.dependencies import (
    get_optional_stripe_integration,
    get_settings,
    get_store,
    get_stripe_integration,
)
from landlordhub_billing.exceptions import (
    InvalidPlanError,
    NoBillingAccountError,
    PaymentProviderError,
    PlanNotConfiguredError,
)
from landlordhub_billing.plans import can_add_property, effective_plan, get_property_limit, to_display_name
from landlordhub_billing.stripe_integration import StripeIntegration
from landlordhub_billing.subscription_reader import get_current_subscription
from landlordhub_billing.subscription_store import SubscriptionStore

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan: str


def _provider_failure(e: PaymentProviderError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"message": str(e), "stripe_code": e.code, "stripe_status": e.http_status},
    )


@router.post("/create-checkout-session", status_code=200)
def create_checkout_session_endpoint(
    checkout_request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: SubscriptionStore = Depends(get_store),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    try:
        result = create_checkout_session(
            user_id=user.id,
            email=user.email,
            plan=checkout_request.plan,
            store=store,
            stripe_integration=stripe_integration,
            settings=settings,
        )
    except InvalidPlanError as e:
        logging.info(e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan")
    except PlanNotConfiguredError as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Price ID not configured")
    except PaymentProviderError as e:
        raise _provider_failure(e)

    if isinstance(result, PortalRedirect):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": result.message,
                "redirectToPortal": True,
                "customerPortalUrl": result.customer_portal_url,
            },
        )
    return {"url": result.url}


@router.post("/create-portal-session", status_code=200)
def create_portal_session_endpoint(
    user: AuthenticatedUser = Depends(get_current_user),
    store: SubscriptionStore = Depends(get_store),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    try:
        url = create_portal_session(user.id, store, stripe_integration, settings)
    except NoBillingAccountError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentProviderError as e:
        raise _provider_failure(e)
    return {"url": url}


@router.get("/get-subscription", status_code=200)
def get_subscription_endpoint(
    user: AuthenticatedUser = Depends(get_current_user),
    store: SubscriptionStore = Depends(get_store),
    stripe_integration: Optional[StripeIntegration] = Depends(get_optional_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    subscription = get_current_subscription(user.id, store, stripe_integration, settings)
    return {"subscription": subscription.to_dict()}


@router.get("/entitlements", status_code=200)
def get_entitlements_endpoint(
    property_count: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    store: SubscriptionStore = Depends(get_store),
    stripe_integration: Optional[StripeIntegration] = Depends(get_optional_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    subscription = get_current_subscription(user.id, store, stripe_integration, settings)
    plan = effective_plan(subscription.plan, subscription.status)
    return {
        "plan": plan,
        "display_name": to_display_name(plan),
        "property_limit": get_property_limit(plan),
        "property_count": property_count,
        "can_add_property": can_add_property(plan, property_count),
    }
