from typing import Optional


class BillingError(Exception):
    """Base class for errors raised by the billing core."""


class InvalidPlanError(BillingError):
    def __init__(self, plan: Optional[str]) -> None:
        super().__init__(f"Invalid plan: {plan!r}. Must be one of 'basic', 'growth' or 'pro'")
        self.plan = plan


class PlanNotConfiguredError(BillingError):
    """A plan has no Stripe price id, or a price id maps to no plan."""


class StripeNotConfiguredError(BillingError):
    pass


class InvalidSignatureError(BillingError):
    pass


class PaymentProviderError(BillingError):
    """A Stripe call failed. Carries Stripe's error code when one was returned."""

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class OrphanedCustomerError(BillingError):
    """A Stripe customer carries no user_id metadata, so ownership is unknown."""


class NoBillingAccountError(BillingError):
    pass
