"""
Entitlement API endpoints.

WHAT: Feature and usage-limit checks for other services, and usage
counter writes.

WHY: Gated features across the product ask one place whether an
organization may proceed. Checks always answer 200 with allowed and
a reason, a denial is an answer, not an error.
"""

from fastapi import APIRouter, Depends, Query

from subscription_engine.core.deps import get_entitlement_service
from subscription_engine.models.plan import UsageMetric
from subscription_engine.schemas.entitlement import (
    EntitlementSummary,
    FeatureAccessResult,
    UsageIncrementRequest,
    UsageLimitResult,
    UsageResponse,
    UsageUpdateRequest,
)
from subscription_engine.services.entitlement_service import EntitlementService

router = APIRouter(prefix="/organizations/{org_id}", tags=["Entitlements"])


@router.get(
    "/entitlements",
    response_model=EntitlementSummary,
    summary="Get entitlements",
    description="Features, limits, usage and exceeded limits for the organization.",
)
async def get_entitlements(
    org_id: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await service.get_summary(org_id)


@router.get(
    "/entitlements/features/{feature_id}",
    response_model=FeatureAccessResult,
    summary="Check feature access",
)
async def check_feature_access(
    org_id: str,
    feature_id: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    return await service.check_feature_access(org_id, feature_id)


@router.get(
    "/entitlements/usage/{metric}",
    response_model=UsageLimitResult,
    summary="Check usage limit",
)
async def check_usage_limit(
    org_id: str,
    metric: str,
    amount: int = Query(ge=0, description="Total usage the caller wants to reach"),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Check whether the organization may reach `amount` of a metric.

    WHY: Callers pass the total they want to reach (e.g. team size after
    inviting one more member), not a delta.
    """
    return await service.check_usage_limit(org_id, metric, amount)


@router.put(
    "/usage/{metric}",
    response_model=UsageResponse,
    summary="Set usage counter",
)
async def update_usage(
    org_id: str,
    metric: str,
    request: UsageUpdateRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    subscription = await service.update_usage(org_id, metric, request.value)
    resolved = UsageMetric.from_name(metric)
    return UsageResponse(
        org_id=org_id,
        metric=resolved.value,
        value=subscription.current_usage(resolved),
        last_updated=subscription.usage_last_updated,
    )


@router.post(
    "/usage/api-requests/increment",
    response_model=UsageResponse,
    summary="Increment API request counter",
)
async def increment_api_requests(
    org_id: str,
    request: UsageIncrementRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    value = await service.increment_api_requests(org_id, request.delta)
    return UsageResponse(
        org_id=org_id,
        metric=UsageMetric.API_REQUESTS.value,
        value=value,
    )
