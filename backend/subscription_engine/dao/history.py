"""
Subscription history and statistics Data Access Objects.

WHAT: Append-only access to subscription_history, plus statistics snapshots.

WHY: History is an audit log. Exposing only append and read methods
keeps it immutable from the application's point of view.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.models.history import SubscriptionHistory, SubscriptionStatistics


class HistoryDAO:
    """
    DAO for SubscriptionHistory.

    NOTE: Append-only, entries are never updated or deleted.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        subscription_id: int,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> SubscriptionHistory:
        """
        Append one history entry.

        Args:
            subscription_id: Subscription the entry belongs to
            event_type: Short event name (e.g. "status_changed")
            event_data: JSON-safe payload
            created_at: Entry time, defaults to now

        Returns:
            The flushed history row
        """
        entry = SubscriptionHistory(
            subscription_id=subscription_id,
            event_type=event_type,
            event_data=event_data or {},
            created_at=created_at or datetime.utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_subscription(
        self, subscription_id: int, event_type: Optional[str] = None
    ) -> List[SubscriptionHistory]:
        """History of one subscription, oldest first."""
        query = select(SubscriptionHistory).where(
            SubscriptionHistory.subscription_id == subscription_id
        )
        if event_type:
            query = query.where(SubscriptionHistory.event_type == event_type)
        result = await self.session.execute(
            query.order_by(SubscriptionHistory.created_at, SubscriptionHistory.id)
        )
        return list(result.scalars().all())

    async def latest_of_type(
        self, subscription_id: int, event_type: str
    ) -> Optional[SubscriptionHistory]:
        """Most recent entry of one type for a subscription."""
        result = await self.session.execute(
            select(SubscriptionHistory)
            .where(
                SubscriptionHistory.subscription_id == subscription_id,
                SubscriptionHistory.event_type == event_type,
            )
            .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_since(self, since: datetime) -> List[SubscriptionHistory]:
        """All entries created at or after since, across subscriptions."""
        result = await self.session.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.created_at >= since)
            .order_by(SubscriptionHistory.created_at, SubscriptionHistory.id)
        )
        return list(result.scalars().all())


class StatisticsDAO:
    """DAO for weekly statistics snapshots."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(self, statistics: Dict[str, Any], captured_at: Optional[datetime] = None) -> SubscriptionStatistics:
        snapshot = SubscriptionStatistics(
            statistics=statistics,
            captured_at=captured_at or datetime.utcnow(),
        )
        self.session.add(snapshot)
        await self.session.flush()
        return snapshot

    async def latest(self) -> Optional[SubscriptionStatistics]:
        result = await self.session.execute(
            select(SubscriptionStatistics)
            .order_by(SubscriptionStatistics.captured_at.desc(), SubscriptionStatistics.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
