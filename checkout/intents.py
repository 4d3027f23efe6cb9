"""
Payment intent tracking.

Stripe is the source of truth for every PaymentIntent. This module validates
checkout requests before anything reaches Stripe, creates and reads intents
through the processor client, and keeps a local record of the last status it
observed for each intent id.

Local records follow one rule: last writer wins among non-terminal statuses,
and a terminal status (succeeded, canceled, payment_failed) is never
overwritten once recorded. Webhooks are not delivered in causal order, so a
late ``processing`` notification must not undo ``succeeded``.
"""

import re
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from checkout.config import Settings
from checkout.errors import InvalidArgument, NotFound
from checkout.models import PaymentIntentRecord
from checkout.processor import StripeProcessorClient

logger = structlog.get_logger(__name__)

_CURRENCY_PATTERN = re.compile(r"[A-Za-z]{3}")
_INTENT_ID_PATTERN = re.compile(r"pi_[A-Za-z0-9_]+")


class IntentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_CAPTURE = "requires_capture"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    PAYMENT_FAILED = "payment_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def from_processor(cls, value: str) -> Optional["IntentStatus"]:
        """Map a status string reported by Stripe, or None if it is not one we track."""
        try:
            return cls(value)
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset(
    {IntentStatus.SUCCEEDED, IntentStatus.CANCELED, IntentStatus.PAYMENT_FAILED}
)


def can_transition(current: IntentStatus, new: IntentStatus) -> bool:
    """Whether a recorded status may be replaced by a newly observed one."""
    return not current.is_terminal and current != new


class PaymentIntentView(BaseModel):
    id: str
    amount: int
    currency: str
    status: str
    created: int


class CreatedIntent(BaseModel):
    client_secret: str
    intent_id: str


class IntentStore:
    """SQL-backed cache of the last observed status per intent id."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        db = self._session_factory()
        try:
            return db.get(PaymentIntentRecord, intent_id)
        finally:
            db.close()

    def apply_status(
        self,
        intent_id: str,
        status: IntentStatus,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        created: Optional[int] = None,
    ) -> bool:
        """
        Record ``status`` for ``intent_id``.

        Returns True when the stored status changed. Unknown intents are
        inserted. A stored terminal status is left untouched.
        """
        db = self._session_factory()
        try:
            record = db.get(PaymentIntentRecord, intent_id)
            if record is None:
                db.add(PaymentIntentRecord(
                    id=intent_id,
                    amount=amount,
                    currency=currency,
                    status=status.value,
                    created=created,
                ))
                try:
                    db.commit()
                    return True
                except IntegrityError:
                    # Another writer inserted first; fall through to the guarded update
                    db.rollback()
                    record = db.get(PaymentIntentRecord, intent_id)

            current = IntentStatus(record.status)
            if not can_transition(current, status):
                if current.is_terminal and current != status:
                    logger.info(
                        "intent_status_regression_ignored",
                        payment_intent_id=intent_id,
                        recorded=current.value,
                        received=status.value,
                    )
                return False

            # Conditional update so a concurrent terminal write is never overwritten
            updated = (
                db.query(PaymentIntentRecord)
                .filter(
                    PaymentIntentRecord.id == intent_id,
                    PaymentIntentRecord.status.notin_([s.value for s in TERMINAL_STATUSES]),
                )
                .update({"status": status.value}, synchronize_session=False)
            )
            db.commit()
            return bool(updated)
        finally:
            db.close()


class IntentTracker:
    """Checkout operations: public config, intent creation and lookup."""

    def __init__(self, settings: Settings, processor: StripeProcessorClient, store: IntentStore):
        self._settings = settings
        self._processor = processor
        self._store = store

    def get_public_config(self) -> dict:
        return {"publishableKey": self._settings.stripe_publishable_key}

    def validate_amount(self, amount) -> int:
        # bool is an int subclass; floats are never accepted for money
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidArgument("Invalid amount")
        if amount <= 0 or amount < self._settings.minimum_amount:
            raise InvalidArgument("Invalid amount")
        if amount > self._settings.maximum_amount:
            raise InvalidArgument("Invalid amount")
        return amount

    def normalize_currency(self, currency: Optional[str]) -> str:
        if not currency:
            return self._settings.default_currency
        if not _CURRENCY_PATTERN.fullmatch(currency):
            raise InvalidArgument("Invalid currency")
        return currency.lower()

    def create_intent(
        self,
        amount,
        currency: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreatedIntent:
        amount = self.validate_amount(amount)
        currency = self.normalize_currency(currency)

        intent = self._processor.create_payment_intent(amount, currency, idempotency_key)

        status = IntentStatus.from_processor(intent.status) or IntentStatus.REQUIRES_PAYMENT_METHOD
        self._record(intent.id, status, amount=amount, currency=currency, created=intent.created)
        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            amount=amount,
            currency=currency,
        )
        return CreatedIntent(client_secret=intent.client_secret, intent_id=intent.id)

    def get_intent(self, intent_id: str) -> PaymentIntentView:
        if not intent_id or not _INTENT_ID_PATTERN.fullmatch(intent_id):
            raise NotFound("Payment intent not found")

        intent = self._processor.retrieve_payment_intent(intent_id)

        status = IntentStatus.from_processor(intent.status)
        if status is not None:
            self._record(
                intent.id, status,
                amount=intent.amount, currency=intent.currency, created=intent.created,
            )

        return PaymentIntentView(
            id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            created=intent.created,
        )

    def _record(self, intent_id: str, status: IntentStatus, **fields) -> None:
        # The store is a cache; Stripe already holds the intent
        try:
            self._store.apply_status(intent_id, status, **fields)
        except SQLAlchemyError as e:
            logger.warning(
                "intent_cache_write_failed",
                payment_intent_id=intent_id,
                status=status.value,
                error=str(e),
            )

    def get_local(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        return self._store.get(intent_id)
