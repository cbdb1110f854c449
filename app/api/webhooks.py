"""
Webhook Handlers for the Payment Gateway
Processes Stripe event deliveries. The signature is checked against the raw
body before anything is parsed; a bad signature answers 400 and nothing is
written.
"""
import logging

from fastapi import APIRouter, Depends, Header, Request

from app.core.deps import get_webhook_reconciler
from app.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """
    Stripe webhook handler

    Events applied: payment_intent.succeeded, payment_intent.payment_failed,
    charge.refunded. Other event types are acknowledged with 200.
    """
    body = await request.body()
    outcome = reconciler.handle(body, stripe_signature)
    return {"received": True, "outcome": outcome.value}
