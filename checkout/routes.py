from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, StrictInt

from checkout.config import Settings
from checkout.intents import IntentTracker
from checkout.webhooks import WebhookDispatcher, verify_and_parse

router = APIRouter(prefix="/api/payment", tags=["payment"])


class CreatePaymentIntentRequest(BaseModel):
    amount: StrictInt                 # minor units, e.g. 1000 = $10.00
    currency: Optional[str] = None


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tracker(request: Request) -> IntentTracker:
    return request.app.state.tracker


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


@router.get("/config")
def get_config(tracker: IntentTracker = Depends(get_tracker)):
    """Publishable key for the checkout form. Never returns secrets."""
    return tracker.get_public_config()


@router.post("/create-payment-intent")
def create_payment_intent(
    request: CreatePaymentIntentRequest,
    idempotency_key: Optional[str] = Header(None),
    tracker: IntentTracker = Depends(get_tracker),
):
    created = tracker.create_intent(request.amount, request.currency, idempotency_key)
    return {"clientSecret": created.client_secret, "paymentIntentId": created.intent_id}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    # Signature covers the raw bytes; never re-serialize before verifying
    payload = await request.body()

    event = verify_and_parse(
        payload,
        stripe_signature,
        settings.stripe_webhook_secret,
        settings.webhook_tolerance_seconds,
    )
    await run_in_threadpool(dispatcher.dispatch, event)

    return {"received": True}


@router.get("/payment-intent/{payment_intent_id}")
def get_payment_intent(payment_intent_id: str, tracker: IntentTracker = Depends(get_tracker)):
    return tracker.get_intent(payment_intent_id).model_dump()
