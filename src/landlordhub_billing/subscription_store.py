import logging
from typing import Any, List, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from landlordhub_billing.models.subscription import SubscriptionRecord, utcnow
from landlordhub_billing.plans import PAID_PLANS

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SubscriptionStore:
    """
    Persistence primitives for subscription records.

    Every write is a single upsert or a single targeted UPDATE keyed by
    user_id or stripe_subscription_id, so concurrent webhook deliveries and
    checkout requests are serialized by the database rather than by us.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception as commit_error:
            self.db.rollback()
            logging.error(commit_error, exc_info=True)
            raise

    def upsert_by_user_id(self, user_id: str, **fields: Any) -> SubscriptionRecord:
        """
        Insert a record for user_id or update the existing one in place.

        Only the given fields are overwritten on conflict; on insert the
        remaining columns take their defaults.
        """
        return self._upsert(user_id, insert_fields=fields, update_fields=fields)

    def save_customer_id(self, user_id: str, stripe_customer_id: str) -> SubscriptionRecord:
        """
        Record the Stripe customer of user_id without touching plan or status.

        A user without a record gets one that reads as the free plan.
        """
        return self._upsert(
            user_id,
            insert_fields={"stripe_customer_id": stripe_customer_id, "plan": "free", "status": "active"},
            update_fields={"stripe_customer_id": stripe_customer_id},
        )

    def _upsert(self, user_id: str, insert_fields: dict, update_fields: dict) -> SubscriptionRecord:
        dialect = self.db.get_bind().dialect.name
        insert = _UPSERT_DIALECTS.get(dialect)
        if insert is None:
            raise NotImplementedError(f"Upsert is not supported on the {dialect} dialect")

        now = utcnow()
        stmt = insert(SubscriptionRecord).values(user_id=user_id, created_at=now, updated_at=now, **insert_fields)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={**update_fields, "updated_at": now},
        )
        try:
            self.db.execute(stmt)
        except Exception:
            self.db.rollback()
            raise
        self._commit()
        logging.info(f"Upserted subscription for user {user_id}: {sorted(update_fields)}")
        return self.get_by_user_id(user_id)

    def update_by_subscription_id(self, stripe_subscription_id: str, **fields: Any) -> int:
        """Update the record carrying stripe_subscription_id. Returns the number of rows matched."""
        if not stripe_subscription_id:
            raise ValueError("stripe_subscription_id cannot be empty")
        return self._update(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id, fields)

    def update_by_user_id(self, user_id: str, **fields: Any) -> int:
        return self._update(SubscriptionRecord.user_id == user_id, fields)

    def update_provisional_by_user_id(self, user_id: str, **fields: Any) -> int:
        """Update the record of user_id only while it is not bound to a Stripe subscription."""
        return self._update(
            (SubscriptionRecord.user_id == user_id) & SubscriptionRecord.stripe_subscription_id.is_(None),
            fields,
        )

    def _update(self, criterion, fields: dict) -> int:
        values = {**fields, "updated_at": utcnow()}
        try:
            matched = self.db.query(SubscriptionRecord).filter(criterion).update(values, synchronize_session=False)
        except Exception:
            self.db.rollback()
            raise
        self._commit()
        return matched

    def get_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        # Re-read from the database; upserts bypass the identity map
        self.db.expire_all()
        return self.db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).first()

    def get_by_subscription_id(self, stripe_subscription_id: str) -> Optional[SubscriptionRecord]:
        return (
            self.db.query(SubscriptionRecord)
            .filter(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
            .first()
        )

    def list_for_user(self, user_id: str) -> List[SubscriptionRecord]:
        self.db.expire_all()
        return (
            self.db.query(SubscriptionRecord)
            .filter(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
            .all()
        )

    def find_active_paid(self, user_id: str) -> Optional[SubscriptionRecord]:
        return (
            self.db.query(SubscriptionRecord)
            .filter(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.status == "active",
                SubscriptionRecord.plan.in_(sorted(PAID_PLANS)),
            )
            .order_by(SubscriptionRecord.created_at.desc())
            .first()
        )

    def find_customer_id(self, user_id: str) -> Optional[str]:
        record = (
            self.db.query(SubscriptionRecord)
            .filter(SubscriptionRecord.user_id == user_id, SubscriptionRecord.stripe_customer_id.isnot(None))
            .first()
        )
        return record.stripe_customer_id if record else None
