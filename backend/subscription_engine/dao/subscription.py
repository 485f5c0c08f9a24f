"""
Subscription Data Access Object (DAO).

WHAT: DAO for subscription rows, the aggregate root of the engine.

WHY: Subscriptions are read by:
1. Entitlement checks (by organization)
2. Webhook reconciliation (by provider subscription id)
3. Scheduler sweeps (by status, period end, provider linkage)

HOW: Extends BaseDAO with lookups and sweep queries. Usage counters
have two write paths that skip the aggregate: a direct set and an
atomic increment, both plain UPDATE statements.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.exceptions import SubscriptionNotFoundError, ValidationError
from subscription_engine.dao.base import BaseDAO
from subscription_engine.models.plan import SubscriptionPlan, UsageMetric
from subscription_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    usage_column_for,
)


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for the Subscription model.

    NOTE: Saving a mutated aggregate goes through the session (add + flush),
    so the mapper's version check applies. The bulk helpers here never touch
    the version column.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    async def get_by_org_id(self, org_id: str) -> Optional[Subscription]:
        """
        Get the subscription for an organization.

        WHY: Each organization has at most one subscription (unique org_id),
        so this is the entry point for every entitlement check.
        """
        result = await self.session.execute(
            select(Subscription).where(Subscription.org_id == org_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_subscription_id(
        self, provider_subscription_id: str
    ) -> Optional[Subscription]:
        """
        Get a subscription by its billing provider id.

        WHY: Webhook payloads only carry the provider's identifiers.

        Args:
            provider_subscription_id: Provider subscription ID (sub_xxx)

        Returns:
            Subscription if found, None otherwise
        """
        if not provider_subscription_id:
            return None
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.provider_subscription_id == provider_subscription_id
            )
        )
        return result.scalar_one_or_none()

    # ========================================================================
    # Sweep queries
    # ========================================================================

    async def get_by_statuses(self, *statuses: SubscriptionStatus) -> List[Subscription]:
        """List subscriptions in any of the given statuses, oldest first."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.status.in_(statuses))
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def get_expired(self, now: datetime) -> List[Subscription]:
        """
        Subscriptions whose cancellation at period end is now due.

        WHAT: cancel_at_period_end set, period end <= now, status still
        granting access (active or trialing).
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.cancel_at_period_end.is_(True),
                    Subscription.current_period_end <= now,
                    Subscription.status.in_(
                        (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
                    ),
                )
            )
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def get_renewing_between(
        self,
        start: datetime,
        end: datetime,
        statuses: Sequence[SubscriptionStatus] = (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
        ),
    ) -> List[Subscription]:
        """List subscriptions whose current period ends within [start, end]."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.current_period_end >= start,
                    Subscription.current_period_end <= end,
                    Subscription.status.in_(tuple(statuses)),
                )
            )
            .order_by(Subscription.current_period_end, Subscription.id)
        )
        return list(result.scalars().all())

    async def get_with_provider_linkage(
        self, statuses: Sequence[SubscriptionStatus]
    ) -> List[Subscription]:
        """List subscriptions confirmed by the provider, in the given statuses."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.provider_subscription_id.is_not(None),
                    Subscription.status.in_(tuple(statuses)),
                )
            )
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def count_by_tier_and_status(self) -> Dict[Tuple[str, str], int]:
        """
        Count subscriptions grouped by plan tier and status.

        Returns:
            {(tier, status): count} for every non-empty group
        """
        result = await self.session.execute(
            select(SubscriptionPlan.tier, Subscription.status, func.count(Subscription.id))
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .group_by(SubscriptionPlan.tier, Subscription.status)
        )
        return {
            (tier.value, status.value): count
            for tier, status, count in result.all()
        }

    # ========================================================================
    # Usage counters
    # ========================================================================

    async def set_usage(self, subscription_id: int, metric: UsageMetric, value: int) -> None:
        """
        Overwrite one usage counter without loading the aggregate.

        Raises:
            ValidationError: If the metric is not tracked or value is negative
            SubscriptionNotFoundError: If no row matched
        """
        column = _usage_column(metric)
        if value < 0:
            raise ValidationError(
                message=f"Usage for {metric.value} must be a non-negative count",
                metric=metric.value,
            )
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values({column: value, "usage_last_updated": datetime.utcnow()})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise SubscriptionNotFoundError(subscription_id=subscription_id)

    async def increment_usage(
        self, subscription_id: int, metric: UsageMetric, delta: int
    ) -> int:
        """
        Atomically add delta to a usage counter.

        WHAT: UPDATE ... SET col = col + :delta RETURNING col, a single
        statement, so concurrent increments never lose updates.

        Returns:
            The counter value after the increment

        Raises:
            SubscriptionNotFoundError: If no row matched
        """
        column = _usage_column(metric)
        counter = getattr(Subscription, column)
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values({column: counter + delta, "usage_last_updated": datetime.utcnow()})
            .returning(counter)
            .execution_options(synchronize_session=False)
        )
        new_value = result.scalar_one_or_none()
        if new_value is None:
            raise SubscriptionNotFoundError(subscription_id=subscription_id)
        return int(new_value)


def _usage_column(metric: UsageMetric) -> str:
    column = usage_column_for(metric)
    if column is None:
        raise ValidationError(
            message=f"Usage for {metric.value} is not tracked",
            metric=metric.value,
        )
    return column
