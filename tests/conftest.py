import json
import datetime
import itertools

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from landlordhub_billing.app import create_app
from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import InvalidSignatureError, PaymentProviderError
from landlordhub_billing.models.base import Base, create_db_engine, create_session_factory
from landlordhub_billing.subscription_store import SubscriptionStore

JWT_SECRET = "test-jwt-secret"


class FakeStripeIntegration:
    """In-memory stand-in for StripeIntegration with the same method contract."""

    def __init__(self):
        self.webhook_secret = "whsec_test"
        self.customers = {}
        self.subscriptions = {}
        self.checkout_sessions = []
        self.portal_sessions = []
        self.subscription_error = None
        self.checkout_error = None
        self._ids = itertools.count(1)

    def create_customer(self, email, user_id):
        customer_id = f"cus_test_{next(self._ids)}"
        self.customers[customer_id] = {"id": customer_id, "email": email, "metadata": {"user_id": str(user_id)}}
        return self.customers[customer_id]

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata):
        if self.checkout_error:
            raise self.checkout_error
        session_id = f"cs_test_{next(self._ids)}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/c/pay/{session_id}",
            "customer": customer_id,
            "price": price_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        self.checkout_sessions.append(session)
        return session

    def create_billing_portal_session(self, customer_id, return_url):
        session = {"id": f"bps_test_{next(self._ids)}", "url": f"https://billing.stripe.test/p/{customer_id}", "return_url": return_url}
        self.portal_sessions.append(session)
        return session

    def retrieve_subscription(self, subscription_id):
        if self.subscription_error:
            raise self.subscription_error
        if subscription_id not in self.subscriptions:
            raise PaymentProviderError(f"No such subscription: '{subscription_id}'", code="resource_missing", http_status=404)
        return self.subscriptions[subscription_id]

    def retrieve_customer(self, customer_id):
        if customer_id not in self.customers:
            raise PaymentProviderError(f"No such customer: '{customer_id}'", code="resource_missing", http_status=404)
        return self.customers[customer_id]

    def process_webhook_event(self, payload, sig_header):
        if sig_header != "valid_signature":
            raise InvalidSignatureError("Invalid signature.")
        return json.loads(payload)

    def add_customer(self, customer_id, user_id=None):
        metadata = {"user_id": user_id} if user_id else {}
        self.customers[customer_id] = {"id": customer_id, "metadata": metadata}
        return self.customers[customer_id]


def stripe_timestamp(delta: datetime.timedelta) -> int:
    return int((datetime.datetime.now(datetime.timezone.utc) + delta).timestamp())


def make_subscription(subscription_id="sub_123", customer="cus_123", price="price_pro", status="active",
                      period_end=None):
    """A customer.subscription object shaped like Stripe's."""
    if period_end is None:
        period_end = stripe_timestamp(datetime.timedelta(days=30))
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price}}]},
    }


def make_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "created": 1234567890, "data": {"object": obj}}


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        stripe_basic_price_id="price_basic",
        stripe_growth_price_id="price_growth",
        stripe_pro_price_id="price_pro",
        stripe_retry_delay=0.0,
        app_url="https://landlordhub.test",
        jwt_secret=JWT_SECRET,
    )


@pytest.fixture
def fake_stripe():
    return FakeStripeIntegration()


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    db = create_session_factory(engine)()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(db_session):
    return SubscriptionStore(db_session)


@pytest.fixture
def app(settings, fake_stripe, engine):
    app = create_app(settings=settings, stripe_integration=fake_stripe)
    # Share the test engine so assertions see what requests wrote
    app.state.session_factory = create_session_factory(engine)
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user_id="user_1", email="landlord@example.com"):
        token = jwt.encode(
            {
                "sub": user_id,
                "email": email,
                "exp": datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1),
            },
            JWT_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers
