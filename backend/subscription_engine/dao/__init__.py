"""
Data Access Object (DAO) layer.

WHY: DAOs keep SQL out of the services. The repository in
services.repository composes them into the subscription repository port.
"""

from subscription_engine.dao.base import BaseDAO
from subscription_engine.dao.subscription import SubscriptionDAO
from subscription_engine.dao.plan import PlanDAO
from subscription_engine.dao.history import HistoryDAO, StatisticsDAO
from subscription_engine.dao.notification import NotificationDAO

__all__ = [
    "BaseDAO",
    "SubscriptionDAO",
    "PlanDAO",
    "HistoryDAO",
    "StatisticsDAO",
    "NotificationDAO",
]
