import logging
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from landlordhub_billing.analytics import track_free_to_paid_upgrade
from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import OrphanedCustomerError, PaymentProviderError
from landlordhub_billing.plans import get_plan_from_price_id, is_paid_plan
from landlordhub_billing.stripe_integration import StripeIntegration
from landlordhub_billing.subscription_store import SubscriptionStore

_UPGRADE_STATUSES = frozenset({"active", "trialing"})


class EventKind(Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        if event_type == "invoice.paid":
            return cls.INVOICE_PAYMENT_SUCCEEDED
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


@dataclass
class ProcessingResult:
    kind: EventKind
    user_id: Optional[str] = None
    upgraded_from_free: bool = False


@dataclass
class _Context:
    store: SubscriptionStore
    stripe_integration: StripeIntegration
    settings: Settings
    event_id: str


def _customer_id(obj: Dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(subscription: Dict[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime.datetime]:
    # Newer API versions report billing periods per subscription item
    timestamp = subscription.get("current_period_end") or _first_item(subscription).get("current_period_end")
    if not timestamp:
        return None
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if not subscription:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def subscription_fields(subscription: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    fields = {"plan": get_plan_from_price_id(_price_id(subscription), settings)}
    if subscription.get("status"):
        fields["status"] = subscription["status"]
    period_end = _period_end(subscription)
    if period_end:
        fields["current_period_end"] = period_end
    return fields


def _resolve_user_id(customer_id: Optional[str], ctx: _Context) -> str:
    if not customer_id:
        raise OrphanedCustomerError(f"Event {ctx.event_id}: subscription has no customer")
    customer = ctx.stripe_integration.retrieve_customer(customer_id)
    user_id = (customer.get("metadata") or {}).get("user_id")
    if not user_id:
        raise OrphanedCustomerError(f"Event {ctx.event_id}: no user_id found in metadata of customer {customer_id}")
    return str(user_id)


def _write(ctx: _Context, description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a store write. Failures are logged and reported as None; Stripe's retry or the sync path heals them."""
    try:
        return func(*args, **kwargs)
    except SQLAlchemyError as e:
        logging.error(f"Event {ctx.event_id}: database error while {description}: {e}", exc_info=True)
        return None


def _handle_subscription_created(subscription: Dict[str, Any], ctx: _Context) -> ProcessingResult:
    subscription_id = subscription.get("id")
    if not subscription_id:
        raise ValueError("Missing subscription id in customer.subscription.created event")
    customer_id = _customer_id(subscription)
    fields = subscription_fields(subscription, ctx.settings)
    user_id = _resolve_user_id(customer_id, ctx)

    try:
        previous = ctx.store.get_by_user_id(user_id)
    except SQLAlchemyError as e:
        logging.error(f"Event {ctx.event_id}: could not read previous subscription of user {user_id}: {e}", exc_info=True)
        previous = None
    was_free = previous is None or not (previous.status == "active" and is_paid_plan(previous.plan))

    record = _write(
        ctx,
        f"upserting subscription {subscription_id} for user {user_id}",
        ctx.store.upsert_by_user_id,
        user_id,
        stripe_customer_id=customer_id,
        stripe_subscription_id=subscription_id,
        **fields,
    )
    if record is not None:
        logging.info(f"Event {ctx.event_id}: subscription {subscription_id} created for user {user_id}, plan={fields['plan']}")

    upgraded = (
        record is not None
        and was_free
        and is_paid_plan(fields["plan"])
        and fields.get("status") in _UPGRADE_STATUSES
    )
    if upgraded:
        track_free_to_paid_upgrade(user_id, fields["plan"], previous.plan if previous else None)
    return ProcessingResult(EventKind.SUBSCRIPTION_CREATED, user_id=user_id, upgraded_from_free=upgraded)


def _handle_subscription_updated(subscription: Dict[str, Any], ctx: _Context) -> ProcessingResult:
    subscription_id = subscription.get("id")
    if not subscription_id:
        raise ValueError("Missing subscription id in customer.subscription.updated event")
    fields = subscription_fields(subscription, ctx.settings)

    matched = _write(
        ctx,
        f"updating subscription {subscription_id}",
        ctx.store.update_by_subscription_id,
        subscription_id,
        **fields,
    )
    if matched is None:
        return ProcessingResult(EventKind.SUBSCRIPTION_UPDATED)
    if matched:
        logging.info(f"Event {ctx.event_id}: subscription {subscription_id} updated, plan={fields['plan']}, status={fields.get('status')}")
        return ProcessingResult(EventKind.SUBSCRIPTION_UPDATED)

    # No row carries this subscription id yet; only a provisional row may take it
    customer_id = _customer_id(subscription)
    user_id = _resolve_user_id(customer_id, ctx)
    matched = _write(
        ctx,
        f"updating provisional subscription of user {user_id}",
        ctx.store.update_provisional_by_user_id,
        user_id,
        stripe_subscription_id=subscription_id,
        stripe_customer_id=customer_id,
        **fields,
    )
    if matched:
        logging.info(f"Event {ctx.event_id}: subscription {subscription_id} attached to user {user_id} by customer lookup")
    elif matched == 0:
        logging.warning(
            f"Event {ctx.event_id}: user {user_id} has no provisional subscription record; "
            f"update for {subscription_id} skipped"
        )
    return ProcessingResult(EventKind.SUBSCRIPTION_UPDATED, user_id=user_id)


def _handle_subscription_deleted(subscription: Dict[str, Any], ctx: _Context) -> ProcessingResult:
    subscription_id = subscription.get("id")
    if not subscription_id:
        raise ValueError("Missing subscription id in customer.subscription.deleted event")

    matched = _write(
        ctx,
        f"canceling subscription {subscription_id}",
        ctx.store.update_by_subscription_id,
        subscription_id,
        status="canceled",
    )
    if matched:
        logging.info(f"Event {ctx.event_id}: subscription {subscription_id} set to canceled.")
    elif matched == 0:
        logging.info(f"Event {ctx.event_id}: Subscription with id {subscription_id} not found during deletion.")
    return ProcessingResult(EventKind.SUBSCRIPTION_DELETED)


def _handle_invoice_payment_succeeded(invoice: Dict[str, Any], ctx: _Context) -> ProcessingResult:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logging.info(f"Event {ctx.event_id}: invoice without subscription, nothing to do.")
        return ProcessingResult(EventKind.INVOICE_PAYMENT_SUCCEEDED)

    fields: Dict[str, Any] = {"status": "active"}
    try:
        period_end = _period_end(ctx.stripe_integration.retrieve_subscription(subscription_id))
        if period_end:
            fields["current_period_end"] = period_end
    except (PaymentProviderError, ValueError) as e:
        logging.warning(f"Event {ctx.event_id}: could not re-fetch subscription {subscription_id}, updating status only: {e}")

    matched = _write(
        ctx,
        f"activating subscription {subscription_id}",
        ctx.store.update_by_subscription_id,
        subscription_id,
        **fields,
    )
    if matched:
        logging.info(f"Event {ctx.event_id}: invoice paid, subscription {subscription_id} set to active.")
    elif matched == 0:
        logging.info(f"Event {ctx.event_id}: Subscription with id {subscription_id} not found during invoice processing.")
    return ProcessingResult(EventKind.INVOICE_PAYMENT_SUCCEEDED)


def _handle_invoice_payment_failed(invoice: Dict[str, Any], ctx: _Context) -> ProcessingResult:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logging.info(f"Event {ctx.event_id}: invoice without subscription, nothing to do.")
        return ProcessingResult(EventKind.INVOICE_PAYMENT_FAILED)

    matched = _write(
        ctx,
        f"marking subscription {subscription_id} past due",
        ctx.store.update_by_subscription_id,
        subscription_id,
        status="past_due",
    )
    if matched:
        logging.warning(f"Event {ctx.event_id}: invoice payment failed, subscription {subscription_id} set to past_due.")
    return ProcessingResult(EventKind.INVOICE_PAYMENT_FAILED)


_HANDLERS: Dict[EventKind, Callable[[Dict[str, Any], _Context], ProcessingResult]] = {
    EventKind.SUBSCRIPTION_CREATED: _handle_subscription_created,
    EventKind.SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: _handle_invoice_payment_succeeded,
    EventKind.INVOICE_PAYMENT_FAILED: _handle_invoice_payment_failed,
}

_missing = set(EventKind) - set(_HANDLERS) - {EventKind.UNHANDLED}
if _missing:
    raise RuntimeError(f"No handler registered for {sorted(kind.value for kind in _missing)}")


def process_event(
    event: dict,
    store: SubscriptionStore,
    stripe_integration: StripeIntegration,
    settings: Settings,
) -> ProcessingResult:
    """
    Process a verified Stripe event and update subscription records accordingly.

    Every handler is an upsert or an absolute field update, so redelivered
    events leave the records unchanged.

    :param event: Dictionary representing the Stripe event payload.
    :param store: Subscription store bound to the request's session.
    :param stripe_integration: Used to resolve customers and re-fetch subscriptions.
    :param settings: Price id configuration for plan resolution.
    :raises ValueError: if the payload has no type.
    :raises OrphanedCustomerError: if the subscription's customer carries no user_id.
    :raises PlanNotConfiguredError: if the subscription's price maps to no plan.
    """
    try:
        event_type = event.get('type')
        if not event_type:
            error_msg = "Missing 'type' in event payload"
            logging.error(error_msg)
            raise ValueError(error_msg)

        event_id = event.get('id', 'N/A')
        timestamp = event.get('created', datetime.datetime.now(datetime.timezone.utc).timestamp())
        kind = EventKind.from_type(event_type)

        if kind is EventKind.UNHANDLED:
            logging.info(f"Unhandled event type: {event_type} for event {event_id} at {timestamp}. No action taken.")
            return ProcessingResult(kind)

        obj = event.get('data', {}).get('object', {})
        ctx = _Context(store=store, stripe_integration=stripe_integration, settings=settings, event_id=event_id)
        result = _HANDLERS[kind](obj, ctx)
        logging.info(f"Event {event_id} at {timestamp}: {event_type} processed.")
        return result

    except Exception as e:
        logging.error(e, exc_info=True)
        raise
