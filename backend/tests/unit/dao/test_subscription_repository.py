"""
Tests for the subscription repository and DAOs.

WHAT: Saving aggregates with their history, optimistic concurrency,
atomic usage increments and the sweep queries.

WHY: The repository is where the version check and the history log are
enforced. A lost update here means an organization keeps access it
no longer pays for, or loses access it does.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from subscription_engine.core.exceptions import (
    ConcurrencyConflictError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    ValidationError,
)
from subscription_engine.db.session import session_scope
from subscription_engine.models.plan import UsageMetric
from subscription_engine.models.subscription import SubscriptionStatus, create_trial_subscription
from subscription_engine.services.repository import SqlSubscriptionRepository
from tests.factories import SubscriptionFactory


class TestSaveSubscription:
    """Tests for save_subscription."""

    @pytest.mark.asyncio
    async def test_save_writes_history_for_every_event(self, session_factory):
        async with session_scope(session_factory) as session:
            repo = SqlSubscriptionRepository(session)
            subscription = create_trial_subscription("org-1", "pro")
            subscription.update_billing_details({"email": "billing@example.com"})
            events = await repo.save_subscription(subscription)

        assert [e.kind.history_type for e in events] == ["created", "billing_updated"]
        assert all(e.subscription_id == subscription.id for e in events)

        async with session_factory() as session:
            history = await SqlSubscriptionRepository(session).get_subscription_history(subscription.id)
        assert [h.event_type for h in history] == ["created", "billing_updated"]
        assert history[0].event_data["organization_id"] == "org-1"

    @pytest.mark.asyncio
    async def test_version_increments_on_update(self, session_factory):
        created = await SubscriptionFactory.create(session_factory)
        assert created.version == 1

        async with session_scope(session_factory) as session:
            repo = SqlSubscriptionRepository(session)
            subscription = await repo.get_subscription_by_organization_id("org-1")
            subscription.update_status(SubscriptionStatus.PAST_DUE)
            await repo.save_subscription(subscription)

        reloaded = await SubscriptionFactory.reload(session_factory, "org-1")
        assert reloaded.version == 2
        assert reloaded.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_stale_write_raises_concurrency_conflict(self, session_factory):
        await SubscriptionFactory.create(session_factory)

        # Two writers load the same version
        async with session_factory() as first_session, session_factory() as second_session:
            first_repo = SqlSubscriptionRepository(first_session)
            second_repo = SqlSubscriptionRepository(second_session)
            first = await first_repo.get_subscription_by_organization_id("org-1")
            second = await second_repo.get_subscription_by_organization_id("org-1")

            first.change_plan("enterprise")
            await first_repo.save_subscription(first)
            await first_session.commit()

            second.update_status(SubscriptionStatus.PAST_DUE)
            with pytest.raises(ConcurrencyConflictError):
                await second_repo.save_subscription(second)
            await second_session.rollback()

        reloaded = await SubscriptionFactory.reload(session_factory, "org-1")
        assert reloaded.plan_id == "enterprise"
        assert reloaded.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_second_subscription_for_org_is_rejected(self, session_factory):
        await SubscriptionFactory.create(session_factory)

        with pytest.raises(SubscriptionAlreadyExistsError):
            await SubscriptionFactory.create(session_factory)


class TestUsageCounters:
    """Tests for the usage write paths that skip the aggregate."""

    @pytest.mark.asyncio
    async def test_increment_usage_returns_new_value(self, session_factory):
        subscription = await SubscriptionFactory.create(session_factory)

        async with session_scope(session_factory) as session:
            repo = SqlSubscriptionRepository(session)
            assert await repo.increment_subscription_usage(subscription.id, UsageMetric.API_REQUESTS, 5) == 5
            assert await repo.increment_subscription_usage(subscription.id, UsageMetric.API_REQUESTS, 2) == 7

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, session_factory):
        subscription = await SubscriptionFactory.create(session_factory)

        async def increment() -> None:
            async with session_scope(session_factory) as session:
                await SqlSubscriptionRepository(session).increment_subscription_usage(
                    subscription.id, UsageMetric.API_REQUESTS, 1
                )

        await asyncio.gather(*(increment() for _ in range(10)))

        reloaded = await SubscriptionFactory.reload(session_factory, "org-1")
        assert reloaded.usage_api_requests == 10

    @pytest.mark.asyncio
    async def test_increment_unknown_subscription(self, session_factory):
        async with session_scope(session_factory) as session:
            with pytest.raises(SubscriptionNotFoundError):
                await SqlSubscriptionRepository(session).increment_subscription_usage(
                    999, UsageMetric.API_REQUESTS, 1
                )

    @pytest.mark.asyncio
    async def test_set_usage_rejects_untracked_metric(self, session_factory):
        subscription = await SubscriptionFactory.create(session_factory)

        async with session_scope(session_factory) as session:
            with pytest.raises(ValidationError):
                await SqlSubscriptionRepository(session).update_subscription_usage(
                    subscription.id, UsageMetric.CONCURRENT_USERS, 3
                )


class TestSweepQueries:
    """Tests for the queries the scheduler jobs start from."""

    @pytest.mark.asyncio
    async def test_expired_subscriptions(self, session_factory):
        now = datetime.utcnow()
        await SubscriptionFactory.create(
            session_factory, org_id="due", cancel_at_period_end=True, period_end=now - timedelta(hours=1)
        )
        await SubscriptionFactory.create(
            session_factory, org_id="not-due", cancel_at_period_end=True, period_end=now + timedelta(days=3)
        )
        await SubscriptionFactory.create(
            session_factory, org_id="renewing", period_end=now - timedelta(hours=1)
        )

        async with session_factory() as session:
            expired = await SqlSubscriptionRepository(session).get_expired_subscriptions(now)

        assert [s.org_id for s in expired] == ["due"]

    @pytest.mark.asyncio
    async def test_renewing_between_excludes_inactive(self, session_factory):
        now = datetime.utcnow()
        await SubscriptionFactory.create(session_factory, org_id="soon", period_end=now + timedelta(days=3))
        await SubscriptionFactory.create(
            session_factory,
            org_id="past-due",
            status=SubscriptionStatus.PAST_DUE,
            period_end=now + timedelta(days=3),
        )
        await SubscriptionFactory.create(session_factory, org_id="later", period_end=now + timedelta(days=20))

        async with session_factory() as session:
            renewing = await SqlSubscriptionRepository(session).get_subscriptions_renewing_between(
                now, now + timedelta(days=7)
            )

        assert [s.org_id for s in renewing] == ["soon"]

    @pytest.mark.asyncio
    async def test_count_by_tier_and_status(self, session_factory):
        await SubscriptionFactory.create(session_factory, org_id="a", plan_id="pro")
        await SubscriptionFactory.create(session_factory, org_id="b", plan_id="pro")
        await SubscriptionFactory.create(
            session_factory, org_id="c", plan_id="enterprise", status=SubscriptionStatus.PAST_DUE
        )

        async with session_factory() as session:
            counts = await SqlSubscriptionRepository(session).count_by_tier_and_status()

        assert counts == {("pro", "active"): 2, ("enterprise", "past_due"): 1}
