"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import os

# Set before the application modules read their settings
os.environ.setdefault("BILLING_PROVIDER", "noop")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from subscription_engine.core.config import Settings
from subscription_engine.db.session import build_session_factory, init_models, session_scope
from subscription_engine.main import create_app
from subscription_engine.services.billing_provider import NoOpBillingProvider
from subscription_engine.services.concurrency import SubscriptionLocks
from subscription_engine.services.entitlement_service import EntitlementService
from subscription_engine.services.event_bus import RecordingEventBus
from subscription_engine.services.notification_service import NotificationService
from subscription_engine.services.plan_catalog import seed_default_plans
from subscription_engine.services.subscription_jobs import SubscriptionJobs
from subscription_engine.services.subscription_service import SubscriptionService
from subscription_engine.services.webhook_reconciler import WebhookReconciler

SCHEDULER_SECRET = "test-scheduler-secret"


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """
    Settings for tests.

    WHY: No retry backoff keeps provider failure tests fast, and the
    no-op provider means no Stripe credentials are needed.
    """
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        BILLING_PROVIDER="noop",
        SCHEDULER_ENABLED=False,
        SCHEDULER_SECRET=SCHEDULER_SECRET,
        PROVIDER_RETRY_BACKOFF_SECONDS=0,
        PROVIDER_TIMEOUT_SECONDS=2,
        SLACK_WEBHOOK_ENABLED=False,
    )


@pytest_asyncio.fixture
async def db_engine(test_settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a test database engine with the default plan catalog.

    WHY: A file database (one per test, under tmp_path) gives every
    session its own connection, like production, which in-memory SQLite
    cannot do. Function scope keeps tests isolated.
    """
    engine = create_async_engine(test_settings.async_database_url, echo=False)
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker:
    factory = build_session_factory(db_engine)
    async with session_scope(factory) as session:
        await seed_default_plans(session)
    return factory


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def provider() -> NoOpBillingProvider:
    return NoOpBillingProvider()


@pytest.fixture
def locks() -> SubscriptionLocks:
    return SubscriptionLocks()


@pytest.fixture
def notification_service(session_factory) -> NotificationService:
    return NotificationService(session_factory)


@pytest.fixture
def entitlement_service(session_factory, event_bus, locks, test_settings) -> EntitlementService:
    return EntitlementService(session_factory, event_bus, locks, test_settings)


@pytest.fixture
def subscription_service(
    session_factory, provider, event_bus, locks, test_settings
) -> SubscriptionService:
    return SubscriptionService(session_factory, provider, event_bus, locks, test_settings)


@pytest.fixture
def reconciler(
    session_factory, provider, event_bus, notification_service, locks, test_settings
) -> WebhookReconciler:
    return WebhookReconciler(
        session_factory, provider, event_bus, notification_service, locks, test_settings
    )


@pytest.fixture
def jobs(
    session_factory, provider, event_bus, notification_service, locks, test_settings
) -> SubscriptionJobs:
    return SubscriptionJobs(
        session_factory, provider, event_bus, notification_service, locks, test_settings
    )


@pytest.fixture
def app(test_settings, session_factory, provider, event_bus):
    return create_app(
        settings=test_settings,
        session_factory=session_factory,
        provider=provider,
        event_bus=event_bus,
    )


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server, making tests faster and more reliable.
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
