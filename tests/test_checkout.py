import datetime

import pytest
from sqlalchemy.exc import OperationalError

from landlordhub_billing.checkout import (
    CheckoutRedirect,
    PortalRedirect,
    create_checkout_session,
    create_portal_session,
)
from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import (
    InvalidPlanError,
    NoBillingAccountError,
    PaymentProviderError,
    PlanNotConfiguredError,
)
from landlordhub_billing.models.subscription import SubscriptionRecord, as_utc
from landlordhub_billing.subscription_reader import get_current_subscription
from conftest import make_subscription


def checkout(plan, store, fake_stripe, settings, user_id="user_1"):
    return create_checkout_session(
        user_id=user_id,
        email="landlord@example.com",
        plan=plan,
        store=store,
        stripe_integration=fake_stripe,
        settings=settings,
    )


def test_checkout_returns_url_and_writes_provisional_row(store, fake_stripe, settings, db_session):
    before = datetime.datetime.now(datetime.timezone.utc)

    result = checkout("basic", store, fake_stripe, settings)

    assert isinstance(result, CheckoutRedirect)
    assert result.url.startswith("https://checkout.stripe.test/")
    session = fake_stripe.checkout_sessions[0]
    assert session["price"] == "price_basic"
    assert session["metadata"] == {"user_id": "user_1", "plan": "starter"}
    assert session["success_url"] == "https://landlordhub.test/account?success=true"
    assert session["cancel_url"] == "https://landlordhub.test/pricing?canceled=true"

    record = db_session.query(SubscriptionRecord).one()
    assert record.plan == "starter"
    assert record.status == "incomplete"
    assert record.stripe_subscription_id is None
    assert record.stripe_customer_id == session["customer"]
    period_end = as_utc(record.current_period_end)
    assert before + datetime.timedelta(days=29) < period_end < before + datetime.timedelta(days=31)


def test_checkout_creates_customer_tagged_with_user(store, fake_stripe, settings):
    checkout("growth", store, fake_stripe, settings)

    assert len(fake_stripe.customers) == 1
    customer = next(iter(fake_stripe.customers.values()))
    assert customer["metadata"] == {"user_id": "user_1"}
    assert customer["email"] == "landlord@example.com"


def test_checkout_twice_keeps_one_row_and_one_customer(store, fake_stripe, settings, db_session):
    checkout("basic", store, fake_stripe, settings)
    checkout("basic", store, fake_stripe, settings)

    assert db_session.query(SubscriptionRecord).count() == 1
    assert len(fake_stripe.customers) == 1
    assert fake_stripe.checkout_sessions[0]["customer"] == fake_stripe.checkout_sessions[1]["customer"]


def test_checkout_reuses_existing_customer(store, fake_stripe, settings):
    store.upsert_by_user_id("user_1", stripe_customer_id="cus_existing", plan="pro", status="canceled")

    checkout("pro", store, fake_stripe, settings)

    assert fake_stripe.customers == {}
    assert fake_stripe.checkout_sessions[0]["customer"] == "cus_existing"


def test_checkout_refused_for_active_paid_subscriber(store, fake_stripe, settings):
    store.upsert_by_user_id("user_1", stripe_customer_id="cus_1", stripe_subscription_id="sub_1",
                            plan="pro", status="active")

    result = checkout("growth", store, fake_stripe, settings)

    assert isinstance(result, PortalRedirect)
    assert result.customer_portal_url == "https://landlordhub.test/api/create-portal-session"
    assert fake_stripe.checkout_sessions == []
    record = store.get_by_user_id("user_1")
    assert record.plan == "pro"
    assert record.stripe_subscription_id == "sub_1"


def test_checkout_allowed_for_active_free_user(store, fake_stripe, settings):
    store.upsert_by_user_id("user_1", plan="free", status="active")
    assert isinstance(checkout("pro", store, fake_stripe, settings), CheckoutRedirect)


@pytest.mark.parametrize("plan", ["free", "starter", "enterprise", ""])
def test_checkout_rejects_invalid_plan(plan, store, fake_stripe, settings):
    with pytest.raises(InvalidPlanError):
        checkout(plan, store, fake_stripe, settings)
    assert fake_stripe.checkout_sessions == []


def test_checkout_without_price_configuration(store, fake_stripe):
    settings = Settings(stripe_secret_key="sk_test_dummy", stripe_pro_price_id="price_pro")
    with pytest.raises(PlanNotConfiguredError):
        checkout("growth", store, fake_stripe, settings)
    assert fake_stripe.customers == {}


def test_checkout_provider_failure_propagates(store, fake_stripe, settings, db_session):
    fake_stripe.checkout_error = PaymentProviderError("Stripe error creating checkout session: boom", code="api_error")
    with pytest.raises(PaymentProviderError):
        checkout("pro", store, fake_stripe, settings)
    record = db_session.query(SubscriptionRecord).one()
    # Only the customer id was persisted, no provisional plan
    assert record.plan == "free"
    assert record.status == "active"
    view = get_current_subscription("user_1", store, fake_stripe, settings)
    assert (view.plan, view.status, view.provisional) == ("free", "active", True)


def test_checkout_survives_provisional_write_failure(store, fake_stripe, settings, monkeypatch):
    original_upsert = store.upsert_by_user_id

    def upsert(user_id, **fields):
        if "plan" in fields:
            raise OperationalError("INSERT INTO subscriptions", {}, Exception("disk I/O error"))
        return original_upsert(user_id, **fields)

    monkeypatch.setattr(store, "upsert_by_user_id", upsert)

    result = checkout("pro", store, fake_stripe, settings)

    assert isinstance(result, CheckoutRedirect)


def test_provisional_row_then_created_webhook_converges(store, fake_stripe, settings, db_session):
    from conftest import make_event
    from landlordhub_billing.stripe_event_processor import process_event

    checkout("basic", store, fake_stripe, settings)
    customer_id = store.get_by_user_id("user_1").stripe_customer_id
    event = make_event(
        "customer.subscription.created",
        make_subscription(subscription_id="sub_new", customer=customer_id, price="price_basic"),
    )

    process_event(event, store, fake_stripe, settings)

    records = db_session.query(SubscriptionRecord).all()
    assert len(records) == 1
    assert records[0].stripe_subscription_id == "sub_new"
    assert records[0].status == "active"
    assert records[0].plan == "starter"


def test_portal_session_for_subscriber(store, fake_stripe, settings):
    store.upsert_by_user_id("user_1", stripe_customer_id="cus_1", plan="pro", status="active")

    url = create_portal_session("user_1", store, fake_stripe, settings)

    assert url == "https://billing.stripe.test/p/cus_1"
    assert fake_stripe.portal_sessions[0]["return_url"] == "https://landlordhub.test/account"


def test_portal_session_backfills_customer_from_subscription(store, fake_stripe, settings):
    store.upsert_by_user_id("user_1", stripe_subscription_id="sub_1", plan="pro", status="active")
    fake_stripe.subscriptions["sub_1"] = make_subscription(subscription_id="sub_1", customer="cus_from_stripe")

    url = create_portal_session("user_1", store, fake_stripe, settings)

    assert url.endswith("cus_from_stripe")
    assert store.get_by_user_id("user_1").stripe_customer_id == "cus_from_stripe"


def test_portal_session_without_subscription(store, fake_stripe, settings):
    with pytest.raises(NoBillingAccountError):
        create_portal_session("user_1", store, fake_stripe, settings)
