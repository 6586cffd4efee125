import logging
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI

from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import StripeNotConfiguredError
from landlordhub_billing.logging_config import sanitize_log_data, setup_logging
from landlordhub_billing.models.base import Base, create_db_engine, create_session_factory
from landlordhub_billing.routers import billing_router, stripe_router
from landlordhub_billing.stripe_integration import StripeIntegration


def create_app(settings: Optional[Settings] = None, stripe_integration: Optional[StripeIntegration] = None) -> FastAPI:
    """
    Build the billing API.

    Clients are constructed here and handed to request handlers through
    app.state, so tests can pass their own settings and a fake Stripe client.
    """
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    logging.debug(f"Loaded settings: {sanitize_log_data(asdict(settings))}")

    if stripe_integration is None:
        try:
            stripe_integration = StripeIntegration.from_settings(settings)
        except StripeNotConfiguredError:
            logging.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")

    engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)

    app = FastAPI(title="LandlordHub Billing")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.stripe_integration = stripe_integration

    # Paths mirror the ones the web client already calls
    app.include_router(billing_router.router, prefix="/api")
    app.include_router(stripe_router.router, prefix="/api")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
