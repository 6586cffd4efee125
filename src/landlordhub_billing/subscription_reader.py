"""
Subscription read path.

Picks the record that governs a user's entitlement and, when that record is
an active Stripe subscription whose billing period ended more than the grace
window ago, pulls the live state from Stripe before answering. A missed
renewal webhook therefore heals on the next page load.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import PaymentProviderError, PlanNotConfiguredError
from landlordhub_billing.models.subscription import SubscriptionRecord, as_utc, utcnow
from landlordhub_billing.plans import get_property_limit, is_paid_plan, to_display_name
from landlordhub_billing.stripe_event_processor import subscription_fields
from landlordhub_billing.stripe_integration import StripeIntegration
from landlordhub_billing.subscription_store import SubscriptionStore

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class SubscriptionView:
    """What the UI is told about a user's subscription."""
    plan: str
    display_name: str
    status: str
    property_limit: Optional[int]
    current_period_end: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    provisional: bool = False
    is_default: bool = False

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionView":
        return cls(
            plan=record.plan,
            display_name=to_display_name(record.plan),
            status=record.status,
            property_limit=get_property_limit(record.plan),
            current_period_end=as_utc(record.current_period_end),
            stripe_customer_id=record.stripe_customer_id,
            stripe_subscription_id=record.stripe_subscription_id,
            provisional=record.stripe_subscription_id is None,
        )

    @classmethod
    def free_default(cls) -> "SubscriptionView":
        return cls(
            plan="free",
            display_name=to_display_name("free"),
            status="active",
            property_limit=get_property_limit("free"),
            is_default=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.current_period_end is not None:
            data["current_period_end"] = self.current_period_end.isoformat()
        return data


def _recency(record: SubscriptionRecord):
    return (as_utc(record.created_at) or _EPOCH, as_utc(record.updated_at) or _EPOCH)


def rank_subscriptions(records: Sequence[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
    """
    Choose the record that governs entitlement.

    In order of preference: the most recent active paid record, the most
    recent active record, the most recent record of any status. None when
    there are no records.
    """
    active = [r for r in records if r.status == "active"]
    active_paid = [r for r in active if is_paid_plan(r.plan)]
    for candidates in (active_paid, active, list(records)):
        if candidates:
            return max(candidates, key=_recency)
    return None


def is_stale(record: SubscriptionRecord, now: datetime, grace: timedelta) -> bool:
    period_end = as_utc(record.current_period_end)
    return (
        record.status == "active"
        and bool(record.stripe_subscription_id)
        and period_end is not None
        and period_end < now - grace
    )


def sync_from_stripe(
    record: SubscriptionRecord,
    store: SubscriptionStore,
    stripe_integration: StripeIntegration,
    settings: Settings,
) -> SubscriptionRecord:
    """Overwrite plan, status and period end of record with Stripe's live values."""
    live = stripe_integration.retrieve_subscription(record.stripe_subscription_id)
    fields = subscription_fields(live, settings)
    store.update_by_user_id(record.user_id, **fields)
    logging.info(
        f"Synced stale subscription {record.stripe_subscription_id} for user {record.user_id}: "
        f"plan={fields['plan']}, status={fields.get('status')}"
    )
    return store.get_by_user_id(record.user_id) or record


def get_current_subscription(
    user_id: str,
    store: SubscriptionStore,
    stripe_integration: Optional[StripeIntegration],
    settings: Settings,
    now: Optional[datetime] = None,
) -> SubscriptionView:
    """
    Get the user's current subscription, refreshing it from Stripe when stale.

    Never fails for lack of a subscription: users without a record are on the
    free plan. A failed refresh returns the stored record unchanged.
    """
    record = rank_subscriptions(store.list_for_user(user_id))
    if record is None:
        return SubscriptionView.free_default()

    now = now or utcnow()
    grace = timedelta(hours=settings.staleness_grace_hours)
    if stripe_integration is not None and is_stale(record, now, grace):
        try:
            record = sync_from_stripe(record, store, stripe_integration, settings)
        except (PaymentProviderError, PlanNotConfiguredError, ValueError, SQLAlchemyError) as e:
            logging.warning(f"Could not refresh stale subscription for user {user_id}, serving stored record: {e}")

    return SubscriptionView.from_record(record)
