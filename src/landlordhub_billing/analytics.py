"""
Best-effort product analytics signals.

Signals are written to the "landlordhub_billing.analytics" logger, which the
deployment ships to the analytics pipeline. Failures never reach the caller.
"""
import logging
from typing import Optional

from landlordhub_billing.plans import to_display_name

logger = logging.getLogger(__name__)


def track_free_to_paid_upgrade(user_id: str, plan: str, previous_plan: Optional[str] = None) -> None:
    try:
        logger.info(
            "free_to_paid_upgrade",
            extra={
                "user_id": user_id,
                "plan_id": plan,
                "plan_name": to_display_name(plan),
                "previous_plan": previous_plan or "none",
            },
        )
    except Exception as e:
        logger.warning(f"Failed to track upgrade for user {user_id}: {e}")
