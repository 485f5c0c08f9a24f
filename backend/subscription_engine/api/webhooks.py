"""
Billing provider webhook endpoint.

WHAT: Receives provider events, verifies their signature and hands them
to the webhook reconciler.

WHY: Webhooks are the source of truth for subscription state:
- checkout.session.completed: New or converted subscription
- invoice.payment_succeeded / invoice.payment_failed: Payment outcomes
- customer.subscription.updated: Status, period and plan changes
- customer.subscription.deleted: Subscription ended

SECURITY (OWASP A02):
- Verifies the webhook signature before processing
- Unverified payloads get a 400 and never reach the reconciler

NOTE: Once verified, every delivery is acknowledged with 200, even when
processing failed. The result body carries the error and the failure is
published as an event, so the provider does not retry a payload that
would fail the same way.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from subscription_engine.core.deps import get_container, get_webhook_reconciler
from subscription_engine.core.exceptions import WebhookSignatureError
from subscription_engine.schemas.webhooks import WebhookResult
from subscription_engine.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/billing",
    response_model=WebhookResult,
    summary="Billing provider webhook",
    description="Verifies and reconciles a billing provider event.",
)
async def billing_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    if not stripe_signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise WebhookSignatureError(message="Missing Stripe-Signature header")

    # Raw body, the signature covers the exact bytes
    payload = await request.body()

    container = get_container(request)
    event = container.provider.verify_webhook(
        payload,
        stripe_signature,
        container.config.STRIPE_WEBHOOK_SECRET,
    )

    logger.info(
        f"Processing billing webhook: {event.type}",
        extra={"event_id": event.id, "event_type": event.type},
    )
    return await reconciler.handle_event(event)
