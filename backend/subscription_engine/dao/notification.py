"""
Billing notification Data Access Object.

WHAT: Stores and lists in-app billing notifications per organization.
"""

from typing import List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.dao.base import BaseDAO
from subscription_engine.models.notification import BillingNotification


class NotificationDAO(BaseDAO[BillingNotification]):
    """Data Access Object for the BillingNotification model."""

    def __init__(self, session: AsyncSession):
        super().__init__(BillingNotification, session)

    async def list_for_org(
        self, org_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[BillingNotification]:
        """Newest notifications for an organization."""
        query = select(BillingNotification).where(BillingNotification.org_id == org_id)
        if unread_only:
            query = query.where(BillingNotification.is_read.is_(False))
        result = await self.session.execute(
            query.order_by(BillingNotification.created_at.desc(), BillingNotification.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def mark_all_read(self, org_id: str) -> int:
        """
        Mark every notification of an organization as read.

        Returns:
            Number of notifications updated
        """
        result = await self.session.execute(
            update(BillingNotification)
            .where(
                BillingNotification.org_id == org_id,
                BillingNotification.is_read.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
