"""Webhook endpoints for external service integrations.

These endpoints do NOT require authentication as they receive signed
payloads from Stripe.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from rental_core.models.stripe_webhook import WebhookResult
from rental_core.services.webhook_handler import WebhookReconciler

from rental_api.dependencies import get_webhook_reconciler

router = APIRouter(tags=["webhooks"])


class WebhookErrorResponse(BaseModel):
    """Error response for webhook failures."""

    success: bool = False
    errorCode: str
    message: str
    recovery: str | None = None


@router.post(
    "/webhooks/stripe",
    summary="Receive Stripe webhook events",
    description="""
Endpoint for Stripe webhook events. Handles:
- checkout.session.completed / payment_intent.succeeded: records the payment
  and confirms the booking
- payment_intent.payment_failed: records the failure
- payment_intent.amount_capturable_updated: marks the deposit authorized
- payment_intent.canceled: marks the deposit expired or canceled
- charge.captured: records the deposit capture
- charge.refunded: records the refund

**No authentication required** - signature is verified using the Stripe webhook secret.

**Idempotent**: Redelivered events (same event id) return 200 with `duplicate: true`.
A failed event answers 500 so Stripe retries it.
""",
    response_model=WebhookResult,
    responses={
        200: {"description": "Event received and processed (or acknowledged)"},
        400: {"description": "Invalid signature or missing header", "model": WebhookErrorResponse},
        500: {"description": "Processing failed or secret missing", "model": WebhookErrorResponse},
    },
)
async def handle_stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookResult:
    # Raw bytes are required for signature verification
    payload = await request.body()
    return reconciler.handle(payload, request.headers.get("Stripe-Signature"))
