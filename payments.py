"""Payment provider client.

Stripe is reached only through PaymentGateway so routes and the enrollment
workflow can be exercised against a fake provider.
"""
import logging
from typing import Any, Dict, Optional, Protocol

import stripe

import config
from errors import PaymentProviderError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"


class PaymentGateway(Protocol):
    def create_intent(self, amount: float, currency: str, metadata: Dict[str, str]) -> Dict[str, Any]: ...

    def retrieve_status(self, intent_id: str) -> str: ...


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    def __init__(self, api_key: str):
        self.api_key = api_key

    def create_intent(self, amount: float, currency: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency,
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error(f"Stripe rejected payment intent creation: {exc}", exc_info=True)
            raise PaymentProviderError("Failed to create payment intent", "create_intent")
        return {"id": intent.id, "client_secret": intent.client_secret}

    def retrieve_status(self, intent_id: str) -> str:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error(f"Error verifying payment intent: {exc}", extra={"payment_id": intent_id})
            raise PaymentProviderError("Unable to verify payment", "retrieve")
        return intent.status


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway(config.STRIPE_SECRET_KEY)
    return _gateway
