"""
FastAPI dependencies and the service container.

WHY: Services share one session factory, one billing provider, one event
bus and one set of per-organization locks. Building them once at startup
and injecting them through dependencies keeps route handlers thin and
lets tests swap any piece (sqlite sessions, the no-op provider, a
recording event bus) through create_app().
"""

from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import Settings
from subscription_engine.services.billing_provider import BillingProvider
from subscription_engine.services.concurrency import SubscriptionLocks
from subscription_engine.services.entitlement_service import EntitlementService
from subscription_engine.services.event_bus import EventBus
from subscription_engine.services.notification_service import NotificationService
from subscription_engine.services.scheduler import SubscriptionScheduler
from subscription_engine.services.slack_service import SlackService
from subscription_engine.services.subscription_jobs import SubscriptionJobs
from subscription_engine.services.subscription_service import SubscriptionService
from subscription_engine.services.webhook_reconciler import WebhookReconciler


@dataclass
class ServiceContainer:
    """
    Every long-lived collaborator of the application.

    NOTE: locks is shared by the subscription service, the webhook
    reconciler and the jobs, so all writers to one organization's
    subscription take turns.
    """

    config: Settings
    session_factory: async_sessionmaker
    provider: BillingProvider
    event_bus: EventBus
    locks: SubscriptionLocks = field(default_factory=SubscriptionLocks)
    notifications: Optional[NotificationService] = None
    entitlements: Optional[EntitlementService] = None
    subscriptions: Optional[SubscriptionService] = None
    reconciler: Optional[WebhookReconciler] = None
    jobs: Optional[SubscriptionJobs] = None
    scheduler: Optional[SubscriptionScheduler] = None

    def __post_init__(self) -> None:
        if self.notifications is None:
            self.notifications = NotificationService(
                self.session_factory,
                slack_service=SlackService(
                    webhook_url=self.config.SLACK_WEBHOOK_URL,
                    enabled=self.config.SLACK_WEBHOOK_ENABLED,
                ),
                base_url=self.config.FRONTEND_URL,
            )
        self.entitlements = EntitlementService(
            self.session_factory, self.event_bus, self.locks, self.config
        )
        self.subscriptions = SubscriptionService(
            self.session_factory, self.provider, self.event_bus, self.locks, self.config
        )
        self.reconciler = WebhookReconciler(
            self.session_factory,
            self.provider,
            self.event_bus,
            self.notifications,
            self.locks,
            self.config,
        )
        self.jobs = SubscriptionJobs(
            self.session_factory,
            self.provider,
            self.event_bus,
            self.notifications,
            self.locks,
            self.config,
        )
        self.scheduler = SubscriptionScheduler(self.jobs)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_settings(request: Request) -> Settings:
    return get_container(request).config


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session for the request.

    WHY: Commits when the handler succeeds and rolls back on any
    exception, so read endpoints and ad-hoc writes need no
    transaction code of their own.
    """
    async with get_container(request).session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_entitlement_service(request: Request) -> EntitlementService:
    return get_container(request).entitlements


def get_subscription_service(request: Request) -> SubscriptionService:
    return get_container(request).subscriptions


def get_webhook_reconciler(request: Request) -> WebhookReconciler:
    return get_container(request).reconciler


def get_notification_service(request: Request) -> NotificationService:
    return get_container(request).notifications


def get_scheduler(request: Request) -> SubscriptionScheduler:
    return get_container(request).scheduler
