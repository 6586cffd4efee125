import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from landlordhub_billing.config import Settings
from landlordhub_billing.dependencies import get_optional_stripe_integration, get_settings, get_store
from landlordhub_billing.exceptions import InvalidSignatureError
from landlordhub_billing.stripe_event_processor import EventKind, process_event
from landlordhub_billing.stripe_integration import StripeIntegration
from landlordhub_billing.subscription_store import SubscriptionStore

router = APIRouter()


@router.post("/webhooks/stripe", status_code=200)
async def process_webhook(
    request: Request,
    store: SubscriptionStore = Depends(get_store),
    stripe_integration: Optional[StripeIntegration] = Depends(get_optional_stripe_integration),
    settings: Settings = Depends(get_settings),
):
    if stripe_integration is None or not stripe_integration.webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe not configured")

    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    try:
        event = stripe_integration.process_webhook_event(payload, sig_header)
    except InvalidSignatureError as e:
        logging.error(e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        result = await run_in_threadpool(process_event, event, store, stripe_integration, settings)
    except Exception as e:
        # A 5xx makes Stripe redeliver the event later
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")

    return {"received": True, "type": event.get("type"), "handled": result.kind is not EventKind.UNHANDLED}
