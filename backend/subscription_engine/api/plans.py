"""
Plan catalog endpoints.

WHAT: Read-only listing of purchasable plans for pricing pages.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.deps import get_db
from subscription_engine.core.exceptions import PlanNotFoundError
from subscription_engine.dao.plan import PlanDAO
from subscription_engine.models.plan import SubscriptionPlan
from subscription_engine.schemas.subscription import PlanResponse, PlansResponse

router = APIRouter(prefix="/plans", tags=["Plans"])


def _to_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        tier=plan.tier,
        display_name=plan.display_name,
        description=plan.description,
        price=plan.price,
        features=plan.features or [],
        limits=plan.limits or {},
        yearly_savings_percentage=plan.yearly_savings_percentage(),
    )


@router.get(
    "",
    response_model=PlansResponse,
    summary="List subscription plans",
    description="Returns the plan catalog ordered from basic to enterprise.",
)
async def list_plans(db: AsyncSession = Depends(get_db)):
    plans = await PlanDAO(db).get_catalog()
    return PlansResponse(plans=[_to_response(plan) for plan in plans])


@router.get("/{plan_id}", response_model=PlanResponse, summary="Get subscription plan")
async def get_plan(plan_id: str, db: AsyncSession = Depends(get_db)):
    plan = await PlanDAO(db).get_by_id(plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id=plan_id)
    return _to_response(plan)
