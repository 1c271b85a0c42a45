import logging
from typing import Any, Dict, Optional

import stripe

import config
from errors import BadRequest, Internal

logger = logging.getLogger(__name__)


class PaymentGateway:
    """Thin wrapper over the Stripe client library."""

    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def create_payment_intent(self, amount: int, metadata: Optional[Dict[str, str]] = None) -> str:
        if amount <= 0:
            raise BadRequest("Price is required")
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount,
                currency=self.currency,
                payment_method_types=["card"],
                metadata=metadata or {},
            )
        except stripe.StripeError as exc:
            logger.error("payment intent creation failed: %s", exc)
            raise Internal("Payment provider error")
        return intent["client_secret"]

    def retrieve_payment_intent(self, intent_id: str) -> Any:
        try:
            return stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            raise BadRequest("Unknown payment")
        except stripe.StripeError as exc:
            logger.error("payment intent lookup failed id=%s: %s", intent_id, exc)
            raise Internal("Payment provider error")

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        if not signature:
            logger.warning("webhook rejected: missing signature header")
            raise BadRequest("Webhook Error: missing signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("webhook rejected: %s", exc)
            raise BadRequest(f"Webhook Error: {exc}")


def to_minor_units(price: float) -> int:
    return int(round(price * 100))


def lookup(obj: Any, *path: str) -> Any:
    """Walk nested Stripe objects (or plain dicts); None when a key is missing."""
    for key in path:
        if obj is None or key not in obj:
            return None
        obj = obj[key]
    return obj


gateway = PaymentGateway(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET, config.PAYMENT_CURRENCY)


def get_payment_gateway() -> PaymentGateway:
    return gateway
