"""
Database models package.

WHY: Centralizing model imports registers every table on Base.metadata
and makes it easier to import models elsewhere.
"""

from subscription_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin
from subscription_engine.models.events import DomainEvent, SubscriptionEventKind
from subscription_engine.models.plan import (
    SubscriptionPlan,
    PlanTier,
    UsageMetric,
    UNLIMITED,
)
from subscription_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    ACTIVE_STATUSES,
    create_trial_subscription,
)
from subscription_engine.models.history import SubscriptionHistory, SubscriptionStatistics
from subscription_engine.models.notification import BillingNotification, NotificationType

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "DomainEvent",
    "SubscriptionEventKind",
    "SubscriptionPlan",
    "PlanTier",
    "UsageMetric",
    "UNLIMITED",
    "Subscription",
    "SubscriptionStatus",
    "ACTIVE_STATUSES",
    "create_trial_subscription",
    "SubscriptionHistory",
    "SubscriptionStatistics",
    "BillingNotification",
    "NotificationType",
]
