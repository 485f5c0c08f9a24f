"""
SQLAlchemy implementation of the subscription repository port.

WHAT: Composes the DAOs into one repository bound to a single session.

WHY: A repository instance is one unit of work. The aggregate row,
its history entries and any usage updates are flushed in the same
transaction and committed (or rolled back) together by session_scope.

HOW:
- save_subscription() adds the aggregate and flushes, so the mapper's
  version_id_col check runs and a stale write raises immediately
- drained events become history rows in the same flush
- events are returned to the caller to publish after commit
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from subscription_engine.core.exceptions import (
    ConcurrencyConflictError,
    SubscriptionAlreadyExistsError,
)
from subscription_engine.dao.history import HistoryDAO, StatisticsDAO
from subscription_engine.dao.plan import PlanDAO
from subscription_engine.dao.subscription import SubscriptionDAO
from subscription_engine.models.events import DomainEvent
from subscription_engine.models.history import SubscriptionHistory, SubscriptionStatistics
from subscription_engine.models.plan import SubscriptionPlan, UsageMetric
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.services.ports import SubscriptionRepository

logger = logging.getLogger(__name__)

# Statuses the hourly sync reconciles with the provider
SYNCABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.INCOMPLETE,
    SubscriptionStatus.UNPAID,
)


class SqlSubscriptionRepository(SubscriptionRepository):
    """Subscription repository over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.subscriptions = SubscriptionDAO(session)
        self.plans = PlanDAO(session)
        self.history = HistoryDAO(session)
        self.statistics = StatisticsDAO(session)

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def get_subscription_by_id(self, subscription_id: int) -> Optional[Subscription]:
        return await self.subscriptions.get_by_id(subscription_id)

    async def get_subscription_by_organization_id(self, org_id: str) -> Optional[Subscription]:
        return await self.subscriptions.get_by_org_id(org_id)

    async def get_subscription_by_provider_id(
        self, provider_subscription_id: str
    ) -> Optional[Subscription]:
        return await self.subscriptions.get_by_provider_subscription_id(provider_subscription_id)

    async def save_subscription(self, subscription: Subscription) -> List[DomainEvent]:
        """
        Upsert the aggregate, write history for its events and return them.

        Raises:
            ConcurrencyConflictError: If the version check fails
            SubscriptionAlreadyExistsError: If org_id or the provider
                subscription id is already taken by another row
        """
        is_new = subscription.id is None
        self.session.add(subscription)
        try:
            await self.session.flush()
        except StaleDataError as e:
            logger.warning(
                f"Concurrent modification of subscription {subscription.id}",
                extra={"subscription_id": subscription.id, "org_id": subscription.org_id},
            )
            raise ConcurrencyConflictError(
                subscription_id=subscription.id,
                org_id=subscription.org_id,
            ) from e
        except IntegrityError as e:
            if not is_new:
                raise
            raise SubscriptionAlreadyExistsError(org_id=subscription.org_id) from e

        events = subscription.flush_events()
        for event in events:
            await self.history.append(
                subscription_id=subscription.id,
                event_type=event.kind.history_type,
                event_data=event.to_payload(),
                created_at=event.occurred_at,
            )

        if events:
            logger.debug(
                f"Saved subscription {subscription.id} with {len(events)} event(s)",
                extra={"subscription_id": subscription.id, "org_id": subscription.org_id},
            )
        return events

    async def delete_subscription(self, subscription_id: int) -> bool:
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            return False
        await self.session.delete(subscription)
        await self.session.flush()
        return True

    # ========================================================================
    # Plans
    # ========================================================================

    async def get_subscription_plan_by_id(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return await self.plans.get_by_id(plan_id)

    async def get_subscription_plan_by_provider_product(
        self, product_id: str
    ) -> Optional[SubscriptionPlan]:
        return await self.plans.get_by_provider_product_id(product_id)

    async def get_all_subscription_plans(self) -> List[SubscriptionPlan]:
        return await self.plans.get_catalog()

    # ========================================================================
    # Usage
    # ========================================================================

    async def update_subscription_usage(
        self, subscription_id: int, metric: UsageMetric, value: int
    ) -> None:
        await self.subscriptions.set_usage(subscription_id, metric, value)

    async def increment_subscription_usage(
        self, subscription_id: int, metric: UsageMetric, delta: int
    ) -> int:
        return await self.subscriptions.increment_usage(subscription_id, metric, delta)

    # ========================================================================
    # Sweeps
    # ========================================================================

    async def get_subscriptions_by_status(self, *statuses: SubscriptionStatus) -> List[Subscription]:
        return await self.subscriptions.get_by_statuses(*statuses)

    async def get_expired_subscriptions(self, now: datetime) -> List[Subscription]:
        return await self.subscriptions.get_expired(now)

    async def get_subscriptions_renewing_between(
        self, start: datetime, end: datetime
    ) -> List[Subscription]:
        return await self.subscriptions.get_renewing_between(start, end)

    async def get_subscriptions_with_failed_payments(self) -> List[Subscription]:
        return await self.subscriptions.get_by_statuses(SubscriptionStatus.PAST_DUE)

    async def get_subscriptions_with_provider_linkage(self) -> List[Subscription]:
        return await self.subscriptions.get_with_provider_linkage(SYNCABLE_STATUSES)

    # ========================================================================
    # History and statistics
    # ========================================================================

    async def get_subscription_history(
        self, subscription_id: int, event_type: Optional[str] = None
    ) -> List[SubscriptionHistory]:
        return await self.history.list_for_subscription(subscription_id, event_type)

    async def append_history(
        self, subscription_id: int, event_type: str, event_data: Dict[str, Any]
    ) -> SubscriptionHistory:
        return await self.history.append(subscription_id, event_type, event_data)

    async def get_latest_history_entry(
        self, subscription_id: int, event_type: str
    ) -> Optional[SubscriptionHistory]:
        return await self.history.latest_of_type(subscription_id, event_type)

    async def get_history_since(self, since: datetime) -> List[SubscriptionHistory]:
        return await self.history.list_since(since)

    async def count_by_tier_and_status(self) -> Dict[Tuple[str, str], int]:
        return await self.subscriptions.count_by_tier_and_status()

    async def save_statistics_snapshot(
        self, statistics: Dict[str, Any], captured_at: Optional[datetime] = None
    ) -> SubscriptionStatistics:
        return await self.statistics.save(statistics, captured_at)

    async def get_latest_statistics(self) -> Optional[SubscriptionStatistics]:
        return await self.statistics.latest()

