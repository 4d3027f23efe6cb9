from checkout.client import CheckoutClient, CheckoutFlow, CheckoutState


def test_full_payment_lifecycle_integration(client, fastapi_app, mocker, make_intent, webhook_delivery):
    """
    Test the full lifecycle:
    1. Checkout form loads config and creates an intent (Stripe mocked)
    2. Client secret is redeemed directly with the processor (confirmer stubbed)
    3. Webhooks arrive out of order (Stripe -> API -> local store)
    4. Intent lookup reports the processor's status
    """

    # --- 1. CREATE PAYMENT INTENT ---
    mocker.patch(
        "stripe.PaymentIntentService.create",
        return_value=make_intent(id="pi_integration_1", client_secret="pi_integration_1_secret_xyz")
    )
    redeemed = []

    def confirmer(publishable_key, client_secret, payment_method):
        redeemed.append((publishable_key, client_secret, payment_method))
        return {"id": "pi_integration_1", "status": "succeeded"}

    flow = CheckoutFlow(CheckoutClient(http_client=client), confirmer=confirmer)

    assert flow.start("20.00", "usd") is CheckoutState.INTENT_CREATED
    assert flow.payment_intent_id == "pi_integration_1"
    assert flow.amount == 2000

    record = fastapi_app.state.tracker.get_local("pi_integration_1")
    assert record.status == "requires_payment_method"
    assert record.amount == 2000

    # --- 2. CONFIRM ---
    assert flow.confirm("pm_card_visa") is CheckoutState.SUCCEEDED
    assert redeemed == [("pk_test_checkoutPublic456", "pi_integration_1_secret_xyz", "pm_card_visa")]

    # --- 3. WEBHOOKS, succeeded before processing ---
    for event_id, event_type in [
        ("evt_b", "payment_intent.succeeded"),
        ("evt_a", "payment_intent.processing"),
    ]:
        body, header = webhook_delivery(event_id, event_type, intent_id="pi_integration_1")
        response = client.post(
            "/api/payment/webhook", content=body, headers={"Stripe-Signature": header}
        )
        assert response.status_code == 200

    assert fastapi_app.state.tracker.get_local("pi_integration_1").status == "succeeded"

    # --- 4. LOOKUP ---
    mocker.patch(
        "stripe.PaymentIntentService.retrieve",
        return_value=make_intent(id="pi_integration_1", status="succeeded")
    )
    view = CheckoutClient(http_client=client).get_payment_intent("pi_integration_1")

    assert view["id"] == "pi_integration_1"
    assert view["status"] == "succeeded"


def test_lookup_does_not_regress_webhook_terminal_status(client, fastapi_app, mocker, make_intent, webhook_delivery):
    body, header = webhook_delivery("evt_1", "payment_intent.canceled")
    client.post("/api/payment/webhook", content=body, headers={"Stripe-Signature": header})

    # A stale read from the processor still reports processing
    mocker.patch("stripe.PaymentIntentService.retrieve", return_value=make_intent(status="processing"))
    response = client.get("/api/payment/payment-intent/pi_test_123")

    assert response.json()["status"] == "processing"
    assert fastapi_app.state.tracker.get_local("pi_test_123").status == "canceled"


def test_create_payment_intent_stripe_failure_leaves_no_record(client, fastapi_app, mocker):
    """If Stripe fails, the error is returned and nothing is recorded locally."""
    import stripe
    mocker.patch(
        "stripe.PaymentIntentService.create",
        side_effect=stripe.APIConnectionError("Stripe Service Unavailable")
    )

    response = client.post("/api/payment/create-payment-intent", json={"amount": 2500})

    assert response.status_code == 500
    assert response.json() == {"error": "Stripe Service Unavailable"}
    assert fastapi_app.state.tracker.get_local("pi_test_123") is None
