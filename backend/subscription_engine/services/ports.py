"""
Subscription repository port.

WHAT: The abstract persistence interface the services depend on.

WHY: Entitlement checks, webhook reconciliation and scheduler jobs only
need these operations. Depending on the port instead of SQLAlchemy keeps
them testable with a stub and lets the storage backend change without
touching business rules.

HOW: SqlSubscriptionRepository (services/repository.py) implements the
port over the DAO layer for one AsyncSession, i.e. one unit of work.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from subscription_engine.models.events import DomainEvent
from subscription_engine.models.history import SubscriptionHistory, SubscriptionStatistics
from subscription_engine.models.plan import SubscriptionPlan, UsageMetric
from subscription_engine.models.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository(ABC):
    """Persistence operations for subscriptions, plans, history and statistics."""

    # ========================================================================
    # Subscriptions
    # ========================================================================

    @abstractmethod
    async def get_subscription_by_id(self, subscription_id: int) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_subscription_by_organization_id(self, org_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_subscription_by_provider_id(
        self, provider_subscription_id: str
    ) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> List[DomainEvent]:
        """
        Upsert a subscription and record its pending events.

        WHAT: Persists the aggregate, drains its event buffer, appends one
        history entry per drained event and returns the events. Publishing
        them is the caller's job, once the unit of work has committed.

        Raises:
            ConcurrencyConflictError: If the row changed since it was loaded
            SubscriptionAlreadyExistsError: If the organization already has one
        """

    @abstractmethod
    async def delete_subscription(self, subscription_id: int) -> bool:
        pass

    # ========================================================================
    # Plans
    # ========================================================================

    @abstractmethod
    async def get_subscription_plan_by_id(self, plan_id: str) -> Optional[SubscriptionPlan]:
        pass

    @abstractmethod
    async def get_subscription_plan_by_provider_product(
        self, product_id: str
    ) -> Optional[SubscriptionPlan]:
        pass

    @abstractmethod
    async def get_all_subscription_plans(self) -> List[SubscriptionPlan]:
        pass

    # ========================================================================
    # Usage
    # ========================================================================

    @abstractmethod
    async def update_subscription_usage(
        self, subscription_id: int, metric: UsageMetric, value: int
    ) -> None:
        pass

    @abstractmethod
    async def increment_subscription_usage(
        self, subscription_id: int, metric: UsageMetric, delta: int
    ) -> int:
        """Atomically add delta to a counter and return the new value."""

    # ========================================================================
    # Sweeps
    # ========================================================================

    @abstractmethod
    async def get_subscriptions_by_status(self, *statuses: SubscriptionStatus) -> List[Subscription]:
        pass

    @abstractmethod
    async def get_expired_subscriptions(self, now: datetime) -> List[Subscription]:
        pass

    @abstractmethod
    async def get_subscriptions_renewing_between(
        self, start: datetime, end: datetime
    ) -> List[Subscription]:
        pass

    @abstractmethod
    async def get_subscriptions_with_failed_payments(self) -> List[Subscription]:
        pass

    @abstractmethod
    async def get_subscriptions_with_provider_linkage(self) -> List[Subscription]:
        pass

    # ========================================================================
    # History and statistics
    # ========================================================================

    @abstractmethod
    async def get_subscription_history(
        self, subscription_id: int, event_type: Optional[str] = None
    ) -> List[SubscriptionHistory]:
        pass

    @abstractmethod
    async def append_history(
        self, subscription_id: int, event_type: str, event_data: Dict[str, Any]
    ) -> SubscriptionHistory:
        pass

    @abstractmethod
    async def get_latest_history_entry(
        self, subscription_id: int, event_type: str
    ) -> Optional[SubscriptionHistory]:
        pass

    @abstractmethod
    async def get_history_since(self, since: datetime) -> List[SubscriptionHistory]:
        pass

    @abstractmethod
    async def count_by_tier_and_status(self) -> Dict[Tuple[str, str], int]:
        pass

    @abstractmethod
    async def save_statistics_snapshot(
        self, statistics: Dict[str, Any], captured_at: Optional[datetime] = None
    ) -> SubscriptionStatistics:
        pass

    @abstractmethod
    async def get_latest_statistics(self) -> Optional[SubscriptionStatistics]:
        pass
