import pytest
import stripe

from checkout.errors import NotFound, UpstreamError
from checkout.main import create_app
from checkout.processor import StripeProcessorClient
from conftest import SECRET_KEY


def test_stripe_client_is_built_with_timeout(mocker):
    requests_client = mocker.patch("stripe.RequestsClient")
    stripe_client = mocker.patch("stripe.StripeClient")

    processor = StripeProcessorClient(SECRET_KEY, timeout_seconds=7.5)

    assert processor.timeout_seconds == 7.5
    requests_client.assert_called_once_with(timeout=7.5)
    stripe_client.assert_called_once_with(SECRET_KEY, http_client=requests_client.return_value)


def test_app_passes_timeout_setting_to_processor(mocker, settings):
    processor = mocker.patch("checkout.main.StripeProcessorClient")

    create_app(settings.model_copy(update={"stripe_timeout_seconds": 4.0}))

    processor.assert_called_once_with(SECRET_KEY, 4.0)


def test_create_with_idempotency_key(mocker, make_intent):
    create = mocker.patch("stripe.PaymentIntentService.create", return_value=make_intent())

    intent = StripeProcessorClient(SECRET_KEY).create_payment_intent(2000, "usd", "ORDER-1")

    assert intent.id == "pi_test_123"
    create.assert_called_once_with(
        params={
            "amount": 2000,
            "currency": "usd",
            "automatic_payment_methods": {"enabled": True},
        },
        options={"idempotency_key": "ORDER-1"},
    )


def test_create_timeout_is_upstream_error(mocker):
    mocker.patch(
        "stripe.PaymentIntentService.create",
        side_effect=stripe.APIConnectionError("Request to Stripe timed out")
    )

    with pytest.raises(UpstreamError, match="timed out"):
        StripeProcessorClient(SECRET_KEY, timeout_seconds=0.1).create_payment_intent(2000, "usd")


def test_retrieve_unknown_intent_is_not_found(mocker):
    mocker.patch(
        "stripe.PaymentIntentService.retrieve",
        side_effect=stripe.InvalidRequestError("No such payment_intent: 'pi_gone'", "intent")
    )

    with pytest.raises(NotFound):
        StripeProcessorClient(SECRET_KEY).retrieve_payment_intent("pi_gone")
