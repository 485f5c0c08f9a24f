"""
Subscription API endpoints for organization subscriptions.

WHAT: REST API endpoints for the subscription lifecycle:
1. GET  /organizations/{org_id}/subscription - Current subscription
2. POST /organizations/{org_id}/subscription/trial - Start a trial
3. POST /organizations/{org_id}/subscription - Create a paid subscription
4. PUT  /organizations/{org_id}/subscription/plan - Change plan
5. POST /organizations/{org_id}/subscription/cancel - Cancel
6. POST /organizations/{org_id}/subscription/reactivate - Undo a pending cancel
7. PUT  /organizations/{org_id}/subscription/payment-method - Payment method
8. PUT  /organizations/{org_id}/subscription/billing - Billing details
9. GET  /organizations/{org_id}/subscription/history - Audit trail

WHY: User-initiated writes surface the first error directly (404 for an
unknown plan or subscription, 409 for conflicts, 502/504 for provider
failures) through the application exception handlers.

NOTE: Authentication and organization membership checks belong to the
gateway in front of this service.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from subscription_engine.schemas.subscription import (
    BillingDetailsUpdateRequest,
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    PaymentMethodUpdateRequest,
    PlanChangeRequest,
    StartTrialRequest,
    SubscriptionHistoryEntry,
    SubscriptionHistoryResponse,
    SubscriptionResponse,
)
from subscription_engine.core.deps import get_subscription_service
from subscription_engine.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations/{org_id}/subscription", tags=["Subscriptions"])


# ============================================================================
# Reads
# ============================================================================


@router.get(
    "",
    response_model=SubscriptionResponse,
    summary="Get subscription",
    description="Returns the organization's subscription with usage and billing details.",
)
async def get_subscription(
    org_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.get_subscription(org_id)


@router.get(
    "/history",
    response_model=SubscriptionHistoryResponse,
    summary="Get subscription history",
)
async def get_subscription_history(
    org_id: str,
    event_type: Optional[str] = Query(default=None, max_length=100),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Get the subscription's history, oldest first.

    WHY: Support and billing disputes need to see every change and
    every reminder that was sent.
    """
    entries = await service.get_history(org_id, event_type)
    return SubscriptionHistoryResponse(
        org_id=org_id,
        entries=[SubscriptionHistoryEntry.model_validate(entry) for entry in entries],
    )


# ============================================================================
# Creation
# ============================================================================


@router.post(
    "/trial",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start trial",
)
async def start_trial(
    org_id: str,
    request: StartTrialRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    billing = request.billing.model_dump(exclude_none=True) if request.billing else None
    return await service.start_trial(org_id, request.plan_id, billing)


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create paid subscription",
    description="Creates the subscription with the billing provider and mirrors it locally.",
)
async def create_subscription(
    org_id: str,
    request: CreateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Create a paid subscription.

    WHY: Converts a running trial in place, so trial history and usage
    carry over to the paid subscription.
    """
    billing = request.billing.model_dump(exclude_none=True) if request.billing else None
    return await service.create_subscription(
        org_id,
        request.plan_id,
        payment_method_id=request.payment_method_id,
        billing=billing,
    )


# ============================================================================
# Changes
# ============================================================================


@router.put("/plan", response_model=SubscriptionResponse, summary="Change plan")
async def change_plan(
    org_id: str,
    request: PlanChangeRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.change_plan(org_id, request.plan_id)


@router.post(
    "/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel subscription",
    description="Cancels now, or at the end of the current period (default).",
)
async def cancel_subscription(
    org_id: str,
    request: Optional[CancelSubscriptionRequest] = None,
    service: SubscriptionService = Depends(get_subscription_service),
):
    at_period_end = request.at_period_end if request is not None else True
    return await service.cancel_subscription(org_id, at_period_end=at_period_end)


@router.post("/reactivate", response_model=SubscriptionResponse, summary="Reactivate subscription")
async def reactivate_subscription(
    org_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.reactivate(org_id)


@router.put("/payment-method", response_model=SubscriptionResponse, summary="Update payment method")
async def update_payment_method(
    org_id: str,
    request: PaymentMethodUpdateRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.update_payment_method(org_id, request.payment_method_id)


@router.put("/billing", response_model=SubscriptionResponse, summary="Update billing details")
async def update_billing_details(
    org_id: str,
    request: BillingDetailsUpdateRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.update_billing_details(
        org_id, request.model_dump(exclude_unset=True)
    )
