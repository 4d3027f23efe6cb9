"""
Checkout client.

Drives the buyer side of a payment in two phases. Phase 1 asks the checkout
service for a PaymentIntent and receives its client secret. Phase 2 redeems
that secret directly with Stripe, so card details never pass through the
checkout service. A client secret authorizes confirming exactly one intent
and is dropped once it has been used.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Optional, Union

import httpx
import stripe
import structlog

from checkout.errors import InvalidArgument

logger = structlog.get_logger(__name__)

MINIMUM_AMOUNT = 50

# (publishable_key, client_secret, payment_method) -> {"id", "status"} or {"error"}
Confirmer = Callable[[str, str, str], dict]


def to_minor_units(amount: Union[str, Decimal]) -> int:
    """Convert a major-unit amount such as "20.00" to minor units (2000)."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise InvalidArgument("Invalid amount") from e
    if not value.is_finite():
        raise InvalidArgument("Invalid amount")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def intent_id_from_client_secret(client_secret: str) -> str:
    # Stripe client secrets have the form pi_<id>_secret_<token>
    intent_id, separator, _ = client_secret.partition("_secret_")
    if not separator or not intent_id.startswith("pi_"):
        raise ValueError("Malformed client secret")
    return intent_id


def stripe_confirm(publishable_key: str, client_secret: str, payment_method: str) -> dict:
    """Confirm a PaymentIntent with the publishable key, as Stripe.js does."""
    try:
        intent = stripe.PaymentIntent.confirm(
            intent_id_from_client_secret(client_secret),
            api_key=publishable_key,
            client_secret=client_secret,
            payment_method=payment_method,
        )
    except stripe.StripeError as e:
        return {"error": e.user_message or "Payment failed"}
    return {"id": intent.id, "status": intent.status}


class CheckoutRequestError(Exception):
    """Non-2xx answer from the checkout service; ``message`` is its ``error`` field."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CheckoutClient:
    """HTTP client for the checkout service's /api/payment endpoints."""

    def __init__(
        self,
        base_url: str = "",
        http_client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ):
        self.http_client = http_client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout_seconds
        )

    def close(self) -> None:
        self.http_client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.http_client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("checkout_service_unreachable", path=path, error=str(e))
            raise CheckoutRequestError("Unable to reach the payment service") from e

        if response.is_success:
            return response.json()

        try:
            error = response.json().get("error")
        except ValueError:
            error = None
        raise CheckoutRequestError(error or "Payment failed", response.status_code)

    def get_config(self) -> dict:
        return self._request("GET", "/api/payment/config")

    def create_payment_intent(self, amount: int, currency: Optional[str] = None) -> dict:
        body = {"amount": amount}
        if currency:
            body["currency"] = currency
        return self._request("POST", "/api/payment/create-payment-intent", json=body)

    def get_payment_intent(self, payment_intent_id: str) -> dict:
        return self._request("GET", f"/api/payment/payment-intent/{payment_intent_id}")


class CheckoutState(str, Enum):
    NEW = "new"
    READY = "ready"
    INTENT_CREATED = "intent_created"
    CONFIRMING = "confirming"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_CONFIRM_RESULTS = {
    "succeeded": CheckoutState.SUCCEEDED,
    "processing": CheckoutState.PROCESSING,
    "requires_action": CheckoutState.REQUIRES_ACTION,
}

_FINISHED = (
    CheckoutState.SUCCEEDED,
    CheckoutState.FAILED,
    CheckoutState.PROCESSING,
    CheckoutState.REQUIRES_ACTION,
)


class CheckoutFlow:
    """
    One checkout form session as an explicit state machine.

        NEW -> READY -> INTENT_CREATED -> CONFIRMING
            -> SUCCEEDED | PROCESSING | REQUIRES_ACTION | FAILED

    Errors never raise out of ``start``/``confirm``; they move the flow to
    FAILED with ``error`` holding the message to show the buyer. A FAILED
    flow may ``start`` again.
    """

    def __init__(
        self,
        client: CheckoutClient,
        confirmer: Confirmer = stripe_confirm,
        minimum_amount: int = MINIMUM_AMOUNT,
    ):
        self.client = client
        self.confirmer = confirmer
        self.minimum_amount = minimum_amount

        self.state = CheckoutState.NEW
        self.publishable_key: Optional[str] = None
        self.payment_intent_id: Optional[str] = None
        self.amount: Optional[int] = None
        self.currency: Optional[str] = None
        self.error: Optional[str] = None
        self._client_secret: Optional[str] = None

    def _require(self, *states: CheckoutState) -> None:
        if self.state not in states:
            raise RuntimeError(f"Checkout cannot proceed from state {self.state.value}")

    def _fail(self, message: str) -> CheckoutState:
        self.state = CheckoutState.FAILED
        self.error = message
        self._client_secret = None
        return self.state

    def load_config(self) -> CheckoutState:
        self._require(CheckoutState.NEW)
        try:
            self.publishable_key = self.client.get_config()["publishableKey"]
        except CheckoutRequestError as e:
            return self._fail(e.message)
        self.state = CheckoutState.READY
        return self.state

    def start(self, amount: Union[str, Decimal], currency: Optional[str] = "usd") -> CheckoutState:
        """Phase 1: create a PaymentIntent and hold its client secret."""
        if self.state is CheckoutState.NEW:
            if self.load_config() is CheckoutState.FAILED:
                return self.state
        elif self.state is CheckoutState.FAILED and self.publishable_key is None:
            # Config never loaded; retry it
            self.state = CheckoutState.NEW
            if self.load_config() is CheckoutState.FAILED:
                return self.state
        self._require(CheckoutState.READY, CheckoutState.FAILED)
        self.error = None
        currency = (currency or "usd").lower()

        try:
            minor_units = to_minor_units(amount)
        except InvalidArgument as e:
            return self._fail(e.message)
        if minor_units < self.minimum_amount:
            return self._fail(f"Amount must be at least {self.minimum_amount} minor units")

        try:
            data = self.client.create_payment_intent(minor_units, currency)
        except CheckoutRequestError as e:
            return self._fail(e.message)

        client_secret = data.get("clientSecret") or ""
        payment_intent_id = data.get("paymentIntentId")
        try:
            embedded_id = intent_id_from_client_secret(client_secret)
        except ValueError:
            return self._fail("Payment service returned an invalid client secret")
        if embedded_id != payment_intent_id:
            return self._fail("Payment service returned a mismatched payment intent")

        self.amount = minor_units
        self.currency = currency
        self.payment_intent_id = payment_intent_id
        self._client_secret = client_secret
        self.state = CheckoutState.INTENT_CREATED
        return self.state

    def confirm(self, payment_method: str) -> CheckoutState:
        """Phase 2: redeem the client secret with the processor."""
        self._require(CheckoutState.INTENT_CREATED)
        self.state = CheckoutState.CONFIRMING

        client_secret, self._client_secret = self._client_secret, None
        result = self.confirmer(self.publishable_key, client_secret, payment_method)

        if result.get("error"):
            return self._fail(result["error"])
        if result.get("id") and result["id"] != self.payment_intent_id:
            return self._fail("Confirmed payment does not match this checkout")

        state = _CONFIRM_RESULTS.get(result.get("status"))
        if state is None:
            return self._fail("Payment was not completed")
        self.state = state
        return self.state

    def refresh(self) -> CheckoutState:
        """Re-read a PROCESSING intent from the checkout service."""
        self._require(CheckoutState.PROCESSING)
        try:
            view = self.client.get_payment_intent(self.payment_intent_id)
        except CheckoutRequestError as e:
            self.error = e.message
            return self.state

        status = view.get("status")
        if status in ("canceled", "payment_failed", "requires_payment_method"):
            return self._fail("Payment failed")
        self.state = _CONFIRM_RESULTS.get(status, CheckoutState.PROCESSING)
        return self.state

    def reset(self) -> CheckoutState:
        """Start over for another payment, keeping the loaded config."""
        self._require(*_FINISHED)
        self.payment_intent_id = None
        self.amount = None
        self.currency = None
        self.error = None
        self._client_secret = None
        self.state = CheckoutState.READY if self.publishable_key is not None else CheckoutState.NEW
        return self.state
