"""
Subscription plan Data Access Object.

WHAT: Read access to the plan catalog, plus an upsert used only by seeding.

WHY: The engine treats plans as reference data. Entitlement checks and
webhook reconciliation look plans up by id or by provider product id.
"""

from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.dao.base import BaseDAO
from subscription_engine.models.plan import SubscriptionPlan


class PlanDAO(BaseDAO[SubscriptionPlan]):
    """Data Access Object for the SubscriptionPlan model."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPlan, session)

    async def get_by_provider_product_id(self, product_id: str) -> Optional[SubscriptionPlan]:
        """
        Find the plan linked to a billing provider product.

        WHY: customer.subscription.updated carries the provider product,
        not our plan id, so plan changes made in the provider's portal
        are resolved here.
        """
        if not product_id:
            return None
        result = await self.session.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.provider_product_id == product_id)
        )
        return result.scalar_one_or_none()

    async def get_catalog(self) -> List[SubscriptionPlan]:
        """All plans ordered from basic to enterprise."""
        result = await self.session.execute(select(SubscriptionPlan))
        return sorted(result.scalars().all(), key=lambda plan: (plan.tier.rank, plan.id))

    async def upsert(self, plan_id: str, **fields: Any) -> SubscriptionPlan:
        """
        Insert a plan or overwrite an existing one with the same id.

        NOTE: Only seeding calls this. The runtime never mutates plans.
        """
        plan = await self.get_by_id(plan_id)
        if plan is None:
            return await self.create(id=plan_id, **fields)
        for name, value in fields.items():
            setattr(plan, name, value)
        await self.session.flush()
        return plan

