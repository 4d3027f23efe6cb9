"""
Stripe webhook verification and dispatch.

Stripe signs each delivery with the endpoint's signing secret: the
``Stripe-Signature`` header carries ``t=<timestamp>,v1=<hex>`` where the
signature is HMAC-SHA256 over ``"<timestamp>.<raw body>"``. Verification runs
on the raw request bytes exactly as received.

Deliveries are at-least-once. The dispatcher remembers a bounded window of
recently handled event ids and skips repeats; the default handlers are
idempotent on their own as well.
"""

import threading
import time
from collections import OrderedDict
from enum import Enum
from typing import Callable, Optional

import stripe
import structlog
from pydantic import BaseModel, Field, ValidationError

from checkout.errors import (
    CheckoutError,
    InvalidPayload,
    SignatureInvalid,
    WebhookHandlingError,
)
from checkout.intents import IntentStatus, IntentStore

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_REQUIRES_ACTION = "payment_intent.requires_action"
    PAYMENT_INTENT_PROCESSING = "payment_intent.processing"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


EVENT_STATUSES = {
    EventKind.PAYMENT_INTENT_CREATED: IntentStatus.REQUIRES_PAYMENT_METHOD,
    EventKind.PAYMENT_INTENT_REQUIRES_ACTION: IntentStatus.REQUIRES_ACTION,
    EventKind.PAYMENT_INTENT_PROCESSING: IntentStatus.PROCESSING,
    EventKind.PAYMENT_INTENT_SUCCEEDED: IntentStatus.SUCCEEDED,
    EventKind.PAYMENT_INTENT_PAYMENT_FAILED: IntentStatus.PAYMENT_FAILED,
    EventKind.PAYMENT_INTENT_CANCELED: IntentStatus.CANCELED,
}


class EventData(BaseModel):
    object: dict = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    id: str
    type: str
    created: int = 0
    data: EventData = Field(default_factory=EventData)

    @property
    def kind(self) -> EventKind:
        return EventKind.from_type(self.type)

    @property
    def payload(self) -> dict:
        return self.data.object


def _signature_timestamp(signature_header: str) -> Optional[int]:
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify_and_parse(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> WebhookEvent:
    """
    Authenticate a delivery and parse it into a WebhookEvent.

    Raises:
        SignatureInvalid: missing or malformed header, signature mismatch, or a
            timestamp more than ``tolerance`` seconds away from now
        InvalidPayload: the body verified but is not an event document
    """
    if not signature_header:
        raise SignatureInvalid("Webhook Error: Missing signature header")

    try:
        body_text = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("webhook_signature_invalid", reason="undecodable body")
        raise SignatureInvalid("Webhook Error: Unable to decode payload") from e

    try:
        stripe.WebhookSignature.verify_header(body_text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook_signature_invalid", reason=e.user_message)
        raise SignatureInvalid(f"Webhook Error: {e.user_message}") from e

    # verify_header only rejects old timestamps
    timestamp = _signature_timestamp(signature_header)
    if timestamp is None or timestamp > time.time() + tolerance:
        logger.warning("webhook_signature_invalid", reason="timestamp in the future")
        raise SignatureInvalid("Webhook Error: Timestamp outside the tolerance zone")

    try:
        return WebhookEvent.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning("webhook_payload_invalid", errors=e.error_count())
        raise InvalidPayload("Invalid payload") from e


class SeenEvents:
    """Bounded, thread-safe window of recently handled event ids."""

    def __init__(self, capacity: int):
        self._capacity = capacity
        self._ids = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._ids:
                self._ids.move_to_end(event_id)
                return True
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def reserve(self, event_id: str) -> bool:
        """Add ``event_id`` unless present. Returns False for an id already held."""
        with self._lock:
            if event_id in self._ids:
                self._ids.move_to_end(event_id)
                return False
            self._insert(event_id)
            return True

    def add(self, event_id: str) -> None:
        with self._lock:
            self._insert(event_id)

    def discard(self, event_id: str) -> None:
        with self._lock:
            self._ids.pop(event_id, None)

    def _insert(self, event_id: str) -> None:
        self._ids[event_id] = None
        self._ids.move_to_end(event_id)
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)


class DispatchOutcome(str, Enum):
    HANDLED = "handled"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


Handler = Callable[[WebhookEvent], None]


class WebhookDispatcher:
    """Routes verified events to handlers registered per event kind."""

    def __init__(self, seen_capacity: int = 1000):
        self._handlers: dict[EventKind, Handler] = {}
        self._seen = SeenEvents(seen_capacity)

    def register(self, kind: EventKind, handler: Handler) -> None:
        if kind is EventKind.UNKNOWN:
            raise ValueError("Unknown events are acknowledged, not handled")
        self._handlers[kind] = handler

    def dispatch(self, event: WebhookEvent) -> DispatchOutcome:
        """
        Run the handler registered for ``event`` at most once per event id.

        The id is reserved before the handler runs, so a concurrent redelivery
        of an in-flight event is skipped. A failed handler releases the id so
        Stripe's retry is processed.
        """
        if not self._seen.reserve(event.id):
            logger.info("webhook_duplicate_skipped", event_id=event.id, event_type=event.type)
            return DispatchOutcome.DUPLICATE

        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("webhook_unhandled_event_type", event_id=event.id, event_type=event.type)
            return DispatchOutcome.IGNORED

        logger.info("webhook_received", event_id=event.id, event_type=event.type)
        try:
            handler(event)
        except CheckoutError:
            self._seen.discard(event.id)
            raise
        except Exception as e:
            self._seen.discard(event.id)
            logger.error(
                "webhook_handler_failed",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
                exc_info=True,
            )
            raise WebhookHandlingError("Webhook handler failed") from e

        return DispatchOutcome.HANDLED


class IntentStatusHandler:
    """Records the status an intent event implies in the local store."""

    def __init__(self, store: IntentStore, status: IntentStatus):
        self._store = store
        self._status = status

    def __call__(self, event: WebhookEvent) -> None:
        intent = event.payload
        intent_id = intent.get("id")
        if not intent_id:
            logger.warning("webhook_event_without_intent", event_id=event.id)
            return

        changed = self._store.apply_status(
            intent_id,
            self._status,
            amount=intent.get("amount"),
            currency=intent.get("currency"),
            created=intent.get("created"),
        )

        log = logger.warning if self._status is IntentStatus.PAYMENT_FAILED else logger.info
        log(
            "payment_intent_status_observed",
            payment_intent_id=intent_id,
            status=self._status.value,
            changed=changed,
            event_id=event.id,
        )


def build_dispatcher(store: IntentStore, seen_capacity: int = 1000) -> WebhookDispatcher:
    dispatcher = WebhookDispatcher(seen_capacity)
    for kind, status in EVENT_STATUSES.items():
        dispatcher.register(kind, IntentStatusHandler(store, status))
    return dispatcher
