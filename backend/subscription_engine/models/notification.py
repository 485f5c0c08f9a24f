"""
Billing notification model.

WHY: Renewal, expiry and payment-failure reminders are shown to
organization admins in an in-app inbox. Persisting them lets the
inbox survive restarts and makes repeated sends visible.
"""

import enum

from sqlalchemy import Column, String, Text, Enum, Boolean, JSON

from subscription_engine.models.base import Base, PrimaryKeyMixin, TimestampMixin


class NotificationType(str, enum.Enum):
    """Kinds of billing notifications sent to organizations."""

    RENEWAL_REMINDER = "renewal_reminder"
    EXPIRY_REMINDER = "expiry_reminder"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REMINDER = "payment_reminder"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


class BillingNotification(Base, PrimaryKeyMixin, TimestampMixin):
    """An in-app notification addressed to an organization."""

    __tablename__ = "billing_notifications"

    org_id = Column(String(64), nullable=False, index=True)
    notification_type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    extra_data = Column("metadata", JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BillingNotification(id={self.id}, org_id={self.org_id}, "
            f"type={self.notification_type.value})>"
        )
