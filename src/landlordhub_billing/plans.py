"""
Plan and entitlement policy.

Single source of truth for property limits, Stripe price ids and plan naming.
The plan sold as "Basic" is stored and reported to analytics as "starter";
every boundary crossing goes through the helpers below.
None means unlimited properties for that plan.
"""
from enum import Enum
from typing import Dict, Optional

from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import InvalidPlanError, PlanNotConfiguredError


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


PAID_PLANS = frozenset({Plan.STARTER.value, Plan.GROWTH.value, Plan.PRO.value})

# Statuses that keep the plan's limits. "incomplete" is the provisional row
# written at checkout; period end is not checked, so an abandoned checkout
# keeps the plan until a webhook or the sync path overwrites the row.
ENTITLED_STATUSES = frozenset({"active", "trialing", "past_due", "incomplete"})

UNLIMITED: Optional[int] = None

PROPERTY_LIMITS: Dict[str, Optional[int]] = {
    Plan.FREE.value: 1,
    Plan.STARTER.value: 5,
    Plan.GROWTH.value: 10,
    Plan.PRO.value: UNLIMITED,
}

DISPLAY_NAMES: Dict[str, str] = {
    Plan.FREE.value: "Free",
    Plan.STARTER.value: "Basic",
    Plan.GROWTH.value: "Growth",
    Plan.PRO.value: "Pro",
}

_EXTERNAL_TO_STORAGE: Dict[str, str] = {
    "basic": Plan.STARTER.value,
    "starter": Plan.STARTER.value,
    "growth": Plan.GROWTH.value,
    "pro": Plan.PRO.value,
    "free": Plan.FREE.value,
}

# Names a checkout request may carry
_PURCHASABLE: Dict[str, str] = {
    "basic": Plan.STARTER.value,
    "growth": Plan.GROWTH.value,
    "pro": Plan.PRO.value,
}


def to_storage_plan(plan: Optional[str]) -> str:
    """Map an externally presented plan name to the stored one ("basic" -> "starter")."""
    key = (plan or "").strip().lower()
    if key not in _EXTERNAL_TO_STORAGE:
        raise InvalidPlanError(plan)
    return _EXTERNAL_TO_STORAGE[key]


def to_purchasable_plan(plan: Optional[str]) -> str:
    """Map a plan name from a checkout request to the stored one. Only basic, growth and pro are accepted."""
    key = (plan or "").strip().lower()
    if key not in _PURCHASABLE:
        raise InvalidPlanError(plan)
    return _PURCHASABLE[key]


def to_external_plan(plan: str) -> str:
    """Inverse of to_storage_plan for the plan names users pick from."""
    storage = to_storage_plan(plan)
    return "basic" if storage == Plan.STARTER.value else storage


def to_display_name(plan: Optional[str]) -> str:
    try:
        return DISPLAY_NAMES[to_storage_plan(plan)]
    except InvalidPlanError:
        return DISPLAY_NAMES[Plan.FREE.value]


def is_paid_plan(plan: Optional[str]) -> bool:
    return plan in PAID_PLANS


def effective_plan(plan: Optional[str], status: Optional[str]) -> str:
    """
    The plan whose limits apply to a subscription in the given status.

    Provisional (incomplete) and past-due subscriptions keep their plan;
    canceled, unpaid and expired ones fall back to free.
    """
    if status not in ENTITLED_STATUSES:
        return Plan.FREE.value
    try:
        return to_storage_plan(plan)
    except InvalidPlanError:
        return Plan.FREE.value


def get_property_limit(plan: Optional[str]) -> Optional[int]:
    """
    Get the number of properties a plan allows.

    Unknown plans get the free limit.
    """
    try:
        return PROPERTY_LIMITS[to_storage_plan(plan)]
    except InvalidPlanError:
        return PROPERTY_LIMITS[Plan.FREE.value]


def can_add_property(plan: Optional[str], current_count: int) -> bool:
    limit = get_property_limit(plan)
    return limit is UNLIMITED or current_count < limit


def _price_ids(settings: Settings) -> Dict[str, Optional[str]]:
    return {
        Plan.STARTER.value: settings.stripe_basic_price_id,
        Plan.GROWTH.value: settings.stripe_growth_price_id,
        Plan.PRO.value: settings.stripe_pro_price_id,
    }


def get_price_id(plan: str, settings: Settings) -> str:
    """
    Get the Stripe price id for a purchasable plan.

    :raises InvalidPlanError: if the plan is not one users can buy.
    :raises PlanNotConfiguredError: if no price id is configured for it.
    """
    storage = to_storage_plan(plan)
    if storage not in PAID_PLANS:
        raise InvalidPlanError(plan)
    price_id = _price_ids(settings).get(storage)
    if not price_id:
        raise PlanNotConfiguredError(f"Price ID not configured for plan {storage}")
    return price_id


def get_plan_from_price_id(price_id: Optional[str], settings: Settings) -> str:
    """
    Get the stored plan name for a Stripe price id.

    :raises PlanNotConfiguredError: if the price id matches no configured plan.
    """
    if price_id:
        for plan, configured in _price_ids(settings).items():
            if configured and configured == price_id:
                return plan
    raise PlanNotConfiguredError(f"No plan configured for Stripe price {price_id!r}")
