import time
import logging
from typing import Any, Callable, Dict, Optional, Union

import stripe

from landlordhub_billing.config import Settings
from landlordhub_billing.exceptions import (
    InvalidSignatureError,
    PaymentProviderError,
    StripeNotConfiguredError,
)

# Errors worth another attempt; everything else is final
RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def as_dict(obj: Any) -> Any:
    """Convert a Stripe SDK object to plain dicts and lists."""
    if obj is None or type(obj) is dict:
        return obj
    for name in ("to_dict", "to_dict_recursive"):
        convert = getattr(obj, name, None)
        if callable(convert):
            return convert()
    return dict(obj)


class StripeIntegration:
    """
    This class encapsulates the integration with the Stripe API: customers,
    checkout and billing portal sessions, subscription lookups and webhook
    verification, with robust error handling and a retry mechanism.

    The API key is passed on every call instead of being set on the stripe
    module, so several differently configured clients can coexist.
    """

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if not api_key:
            raise StripeNotConfiguredError("Stripe not configured - STRIPE_SECRET_KEY required")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeIntegration":
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            max_retries=settings.stripe_max_retries,
            retry_delay=settings.stripe_retry_delay,
        )

    def _call(self, action: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Dict[str, Any]:
        attempt = 0
        while attempt < self.max_retries:
            try:
                return as_dict(func(*args, api_key=self.api_key, **kwargs))
            except RETRYABLE_ERRORS as e:
                logging.error(f"Error {action} (attempt {attempt + 1}): {e}", exc_info=True)
                attempt += 1
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay)
            except stripe.StripeError as e:
                logging.error(f"Stripe error {action}: {e}", exc_info=True)
                raise PaymentProviderError(
                    f"Stripe error {action}: {e.user_message or str(e)}",
                    code=e.code,
                    http_status=e.http_status,
                ) from e
        raise PaymentProviderError(f"Failed {action} after {self.max_retries} attempts.")

    def create_customer(self, email: Optional[str], user_id: str) -> Dict[str, Any]:
        """
        Create a Stripe customer tagged with the owning user.

        :param email: The user's email address, if known.
        :param user_id: Our user id, stored in customer metadata so webhooks can resolve ownership.
        :return: The created customer as a dictionary.
        """
        return self._call(
            "creating customer",
            stripe.Customer.create,
            email=email,
            metadata={"user_id": str(user_id)},
        )

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """
        Create a subscription-mode Checkout session for a single price.

        :param metadata: Copied onto both the session and the resulting subscription.
        :return: The checkout session as a dictionary; its "url" is the redirect target.
        """
        return self._call(
            "creating checkout session",
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        return self._call(
            "creating billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Retrieve a subscription by id.

        :raises ValueError: if subscription_id is empty.
        """
        if not subscription_id or not subscription_id.strip():
            raise ValueError("subscription_id cannot be empty")
        return self._call("retrieving subscription", stripe.Subscription.retrieve, subscription_id)

    def retrieve_customer(self, customer_id: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        if not customer_id:
            raise ValueError("customer_id cannot be empty")
        return self._call("retrieving customer", stripe.Customer.retrieve, customer_id)

    def process_webhook_event(self, payload: Union[str, bytes], sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the signature of a webhook delivery and parse it.

        :param payload: The raw request body, exactly as received.
        :param sig_header: The Stripe-Signature header.
        :return: The event as a dictionary.
        :raises InvalidSignatureError: if the header is missing or does not match the payload.
        :raises StripeNotConfiguredError: if no webhook secret is configured.
        """
        if not self.webhook_secret:
            raise StripeNotConfiguredError("STRIPE_WEBHOOK_SECRET not configured")
        if not sig_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}', exc_info=True)
            raise InvalidSignatureError('Invalid signature.') from e
        except ValueError as e:
            logging.error(f'Invalid webhook payload: {e}', exc_info=True)
            raise InvalidSignatureError(f'Invalid payload: {e}') from e
        return as_dict(event)
