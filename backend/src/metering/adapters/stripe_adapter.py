"""Stripe payment gateway adapter."""
from typing import Any

import stripe

from metering.config import settings


class StripeAdapter:
    """Adapter for Stripe off-session charges."""

    def __init__(self, api_key: str | None = None):
        """Initialize Stripe adapter with API key."""
        stripe.api_key = api_key or settings.stripe_secret_key

    async def create_off_session_payment(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Create and confirm an off-session payment intent.

        Args:
            amount: Amount in cents
            currency: ISO currency code
            customer_id: Stripe customer ID
            payment_method_id: Stored Stripe payment method ID
            idempotency_key: Idempotency key so retried charges are not duplicated
            metadata: Additional metadata

        Returns:
            Payment intent details; ``status`` is "failed" with ``error`` set
            when Stripe rejected the charge, ``replayed`` is True when the
            intent was created by an earlier call with the same key
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_id,
            "payment_method": payment_method_id,
            "payment_method_types": ["card"],
            "confirm": True,
            "off_session": True,
            "metadata": metadata or {},
        }

        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            payment_intent = stripe.PaymentIntent.create(**params)

            return {
                "id": payment_intent.id,
                "status": payment_intent.status,
                "amount": payment_intent.amount,
                "currency": payment_intent.currency,
                # Stripe answers a reused idempotency key with the original intent
                "replayed": payment_intent.last_response.headers.get("Idempotent-Replayed") == "true",
            }
        except stripe.CardError as e:
            # Card was declined
            return {
                "id": None,
                "status": "failed",
                "error": e.user_message,
            }
        except stripe.StripeError as e:
            return {
                "id": None,
                "status": "failed",
                "error": str(e),
            }
