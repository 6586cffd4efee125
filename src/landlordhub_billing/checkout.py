"""
Checkout and billing portal sessions.

Creating a checkout session also writes a provisional subscription row so a
user who pays immediately is not shown the free plan while the Stripe webhook
is still on its way. The webhook later overwrites that row in place.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import NoBillingAccountError, PaymentProviderError
from landlordhub_billing.models.subscription import utcnow
from landlordhub_billing.plans import get_price_id, to_purchasable_plan
from landlordhub_billing.stripe_integration import StripeIntegration
from landlordhub_billing.subscription_store import SubscriptionStore


@dataclass(frozen=True)
class CheckoutRedirect:
    url: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class PortalRedirect:
    """Returned instead of a checkout URL when the user already pays for a plan."""
    customer_portal_url: str
    message: str = "Please use the Customer Portal to manage your subscription."


CheckoutResult = Union[CheckoutRedirect, PortalRedirect]


def create_checkout_session(
    user_id: str,
    email: Optional[str],
    plan: str,
    store: SubscriptionStore,
    stripe_integration: StripeIntegration,
    settings: Settings,
) -> CheckoutResult:
    """
    Start a Stripe Checkout for the requested plan.

    :param user_id: Authenticated user id.
    :param email: User email, used when a Stripe customer has to be created.
    :param plan: Requested plan as users name it ("basic", "growth" or "pro").
    :param store: Subscription store bound to the request's session.
    :param stripe_integration: Stripe client.
    :param settings: Price ids, redirect URLs and the provisional period length.
    :return: CheckoutRedirect with the hosted checkout URL, or PortalRedirect when an
        active paid subscription already exists.
    :raises InvalidPlanError: if the plan is not one users can buy.
    :raises PlanNotConfiguredError: if no price id is configured for the plan.
    :raises PaymentProviderError: if Stripe rejected or did not answer a call.
    """
    storage_plan = to_purchasable_plan(plan)

    existing = store.find_active_paid(user_id)
    if existing:
        logging.info(f"User {user_id} already has an active {existing.plan} subscription, redirecting to portal")
        return PortalRedirect(customer_portal_url=settings.customer_portal_url)

    price_id = get_price_id(storage_plan, settings)

    customer_id = store.find_customer_id(user_id)
    if not customer_id:
        customer = stripe_integration.create_customer(email=email, user_id=user_id)
        customer_id = customer["id"]
        store.save_customer_id(user_id, customer_id)
        logging.info(f"Created Stripe customer {customer_id} for user {user_id}")

    session = stripe_integration.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        metadata={"user_id": str(user_id), "plan": storage_plan},
    )
    if not session.get("url"):
        raise PaymentProviderError("Stripe returned a checkout session without a URL")
    logging.info(f"Created checkout session: session_id={session.get('id')}, user_id={user_id}, plan={storage_plan}")

    _write_provisional_subscription(user_id, customer_id, storage_plan, store, settings)

    return CheckoutRedirect(url=session["url"], session_id=session.get("id"))


def _write_provisional_subscription(
    user_id: str,
    customer_id: str,
    plan: str,
    store: SubscriptionStore,
    settings: Settings,
) -> None:
    try:
        store.upsert_by_user_id(
            user_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=None,
            plan=plan,
            status="incomplete",
            current_period_end=utcnow() + timedelta(days=settings.provisional_period_days),
        )
        logging.info(f"Created fallback subscription record for user: {user_id}")
    except SQLAlchemyError as e:
        # The checkout URL is still returned; the webhook creates the row instead
        logging.error(f"Error creating fallback subscription for user {user_id}: {e}", exc_info=True)


def create_portal_session(
    user_id: str,
    store: SubscriptionStore,
    stripe_integration: StripeIntegration,
    settings: Settings,
) -> str:
    """
    Create a Stripe billing portal session for an existing subscriber.

    A record that lost its customer id is repaired from the Stripe
    subscription before the portal session is created.

    :return: The portal URL.
    :raises NoBillingAccountError: if there is no subscription record or no resolvable customer.
    :raises PaymentProviderError: if Stripe rejected or did not answer a call.
    """
    subscription = store.get_by_user_id(user_id)
    if not subscription:
        raise NoBillingAccountError(
            "No subscription found. You must have an active subscription to use the Customer Portal."
        )

    customer_id = subscription.stripe_customer_id
    if not customer_id and subscription.stripe_subscription_id:
        logging.info(f"No customer ID found, fetching from subscription: {subscription.stripe_subscription_id}")
        stripe_subscription = stripe_integration.retrieve_subscription(subscription.stripe_subscription_id)
        customer = stripe_subscription.get("customer")
        customer_id = customer.get("id") if isinstance(customer, dict) else customer
        if customer_id:
            store.update_by_user_id(user_id, stripe_customer_id=customer_id)

    if not customer_id:
        raise NoBillingAccountError(
            "No Stripe customer ID found. Your subscription may not be fully set up. Please contact support."
        )

    session = stripe_integration.create_billing_portal_session(
        customer_id=customer_id,
        return_url=settings.portal_return_url,
    )
    logging.info(f"Created portal session for user_id={user_id}, customer_id={customer_id}")
    return session["url"]
