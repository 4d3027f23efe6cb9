import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from checkout.config import Settings
from checkout.main import create_app

SECRET_KEY = "sk_test_checkoutSecret123"
PUBLISHABLE_KEY = "pk_test_checkoutPublic456"
WEBHOOK_SECRET = "whsec_checkoutSigning789"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        stripe_secret_key=SECRET_KEY,
        stripe_publishable_key=PUBLISHABLE_KEY,
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite:///{tmp_path / 'checkout_test.db'}",
    )


@pytest.fixture
def fastapi_app(settings):
    return create_app(settings)


@pytest.fixture
def client(fastapi_app):
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def make_intent(mocker):
    """Build a stand-in for a stripe.PaymentIntent."""
    def _make(**overrides):
        values = {
            "id": "pi_test_123",
            "client_secret": "pi_test_123_secret_abc",
            "amount": 2000,
            "currency": "usd",
            "status": "requires_payment_method",
            "created": 1700000000,
        }
        values.update(overrides)
        intent = mocker.Mock()
        for name, value in values.items():
            setattr(intent, name, value)
        return intent
    return _make


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header for ``payload``: HMAC-SHA256 over "<t>.<body>"."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def webhook_delivery():
    """Build a (raw body, Stripe-Signature header) pair for a payment intent event."""
    def _build(event_id, event_type, intent_id="pi_test_123", status=None,
               secret=WEBHOOK_SECRET, timestamp=None):
        body = json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": 1700000100,
            "data": {
                "object": {
                    "id": intent_id,
                    "object": "payment_intent",
                    "amount": 2000,
                    "currency": "usd",
                    "status": status or event_type.rsplit(".", 1)[-1],
                    "created": 1700000000,
                },
            },
        }).encode()
        return body, sign_payload(body, secret=secret, timestamp=timestamp)
    return _build


@pytest.fixture
def sign():
    return sign_payload
