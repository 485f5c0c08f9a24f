"""
Subscription history and statistics snapshot models.

WHY: History is the audit trail for every subscription mutation,
used for activity reporting and for debugging reconciliation:
1. One row per domain event, written in the same transaction as the change
2. Rows are never updated or deleted, only appended
3. Scheduler reminders are logged here too, so repeated runs are visible

Statistics snapshots are the weekly output of the statistics job.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index

from subscription_engine.models.base import Base, PrimaryKeyMixin


class SubscriptionHistory(Base, PrimaryKeyMixin):
    """
    Append-only history entry for a subscription.

    NOTE: No updated_at column, entries are immutable once written.
    """

    __tablename__ = "subscription_history"

    subscription_id = Column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_subscription_history_sub_created", "subscription_id", "created_at"),
        Index("ix_subscription_history_type_created", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SubscriptionHistory(id={self.id}, subscription_id={self.subscription_id}, "
            f"event_type={self.event_type})>"
        )


class SubscriptionStatistics(Base, PrimaryKeyMixin):
    """Point-in-time statistics snapshot written by the weekly job."""

    __tablename__ = "subscription_statistics"

    captured_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    statistics = Column(JSON, nullable=False)
