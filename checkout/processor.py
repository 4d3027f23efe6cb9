"""
Stripe adapter.

Each adapter owns a ``stripe.StripeClient`` carrying its own secret key and
HTTP timeout instead of assigning the process-wide ``stripe.api_key``, so
several clients with different keys can coexist (tests build one per
application instance).
"""

from typing import Optional

import stripe
import structlog

from checkout.errors import NotFound, UpstreamError, scrub_secrets

logger = structlog.get_logger(__name__)


class StripeProcessorClient:
    """Creates and retrieves Stripe PaymentIntents."""

    def __init__(self, secret_key: str, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds
        self._client = stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
        )

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        params = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}

        try:
            return self._client.v1.payment_intents.create(params=params, options=options)
        except stripe.StripeError as e:
            logger.error(
                "stripe_create_failed",
                error_type=type(e).__name__,
                code=getattr(e, "code", None),
            )
            raise UpstreamError(e.user_message or str(e) or "Payment processor error") from e

    def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        try:
            return self._client.v1.payment_intents.retrieve(payment_intent_id)
        except stripe.InvalidRequestError as e:
            # Stripe answers "No such payment_intent" with an invalid request
            logger.info("stripe_intent_not_found", payment_intent_id=payment_intent_id)
            raise NotFound(scrub_secrets(str(e)) or "Payment intent not found") from e
        except stripe.StripeError as e:
            logger.error(
                "stripe_retrieve_failed",
                payment_intent_id=payment_intent_id,
                error_type=type(e).__name__,
            )
            raise UpstreamError(e.user_message or str(e) or "Payment processor error") from e
