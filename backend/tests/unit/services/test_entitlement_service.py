"""
Unit tests for EntitlementService.

WHAT: Feature access, usage limits, usage writes and the basic-tier fallback.

WHY: Every gated feature in the product asks this service. A wrong
answer either leaks paid features or locks paying customers out, and
a crash must never turn into "allowed".
"""

from unittest.mock import patch

import pytest

from subscription_engine.core.exceptions import SubscriptionNotFoundError, ValidationError
from subscription_engine.dao.plan import PlanDAO
from subscription_engine.db.session import session_scope
from subscription_engine.models.events import SubscriptionEventKind
from subscription_engine.models.plan import UNLIMITED
from subscription_engine.models.subscription import SubscriptionStatus
from subscription_engine.services.entitlement_service import (
    CHECK_FAILED_REASON,
    NO_SUBSCRIPTION_REASON,
)
from subscription_engine.services.plan_catalog import BASIC_FEATURE_IDS
from tests.factories import SubscriptionFactory


class TestCheckFeatureAccess:
    """Tests for check_feature_access."""

    @pytest.mark.asyncio
    async def test_plan_feature_allowed(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        result = await entitlement_service.check_feature_access("org-1", "full_statistics")

        assert result.allowed is True
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_feature_outside_plan_denied_with_plan_name(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        result = await entitlement_service.check_feature_access("org-1", "api_access")

        assert result.allowed is False
        assert result.reason == "Feature api_access is not available in Pro plan"

    @pytest.mark.asyncio
    async def test_no_subscription_gets_basic_features(self, entitlement_service):
        basic = await entitlement_service.check_feature_access("org-none", "basic_statistics")
        paid = await entitlement_service.check_feature_access("org-none", "full_statistics")

        assert basic.allowed is True
        assert paid.allowed is False
        assert paid.reason == NO_SUBSCRIPTION_REASON

    @pytest.mark.asyncio
    async def test_past_due_falls_back_to_basic(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(
            session_factory, plan_id="enterprise", status=SubscriptionStatus.PAST_DUE
        )

        basic = await entitlement_service.check_feature_access("org-1", "basic_goal_management")
        paid = await entitlement_service.check_feature_access("org-1", "api_access")

        assert basic.allowed is True
        assert paid.allowed is False
        assert paid.reason == "Subscription is not active (past_due)"

    @pytest.mark.asyncio
    async def test_trialing_is_entitled(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(
            session_factory, plan_id="enterprise", status=SubscriptionStatus.TRIALING
        )

        result = await entitlement_service.check_feature_access("org-1", "sso_integration")

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_internal_error_denies(self, entitlement_service):
        with patch(
            "subscription_engine.services.entitlement_service.SqlSubscriptionRepository.get_subscription_by_organization_id",
            side_effect=RuntimeError("database down"),
        ):
            result = await entitlement_service.check_feature_access("org-1", "basic_statistics")

        assert result.allowed is False
        assert result.reason == CHECK_FAILED_REASON


class TestCheckUsageLimit:
    """Tests for check_usage_limit."""

    @pytest.mark.asyncio
    async def test_within_limit(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        result = await entitlement_service.check_usage_limit("org-1", "team_members", 10)

        assert result.allowed is True
        assert result.limit == 10
        assert result.current_usage == 0

    @pytest.mark.asyncio
    async def test_over_limit_reports_limit_and_usage(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")
        await entitlement_service.update_usage("org-1", "team_members", 10)

        result = await entitlement_service.check_usage_limit("org-1", "teamMembers", 11)

        assert result.allowed is False
        assert result.limit == 10
        assert result.current_usage == 10
        assert "exceeds the limit" in result.reason

    @pytest.mark.asyncio
    async def test_metric_without_limit_is_unbounded(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        result = await entitlement_service.check_usage_limit("org-1", "api_requests", 1_000_000)

        assert result.allowed is True
        assert result.limit is None

    @pytest.mark.asyncio
    async def test_no_subscription_denied(self, entitlement_service):
        result = await entitlement_service.check_usage_limit("org-none", "team_members", 1)

        assert result.allowed is False
        assert result.reason == NO_SUBSCRIPTION_REASON

    @pytest.mark.asyncio
    async def test_unknown_metric_denied(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        result = await entitlement_service.check_usage_limit("org-1", "storage_gb", 1)

        assert result.allowed is False
        assert result.reason == CHECK_FAILED_REASON

    @pytest.mark.asyncio
    async def test_limit_boundary(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="basic")

        at_limit = await entitlement_service.check_usage_limit("org-1", "team_members", 3)
        over_limit = await entitlement_service.check_usage_limit("org-1", "team_members", 4)

        assert at_limit.allowed is True
        assert over_limit.allowed is False
        assert at_limit.limit == over_limit.limit == 3

    @pytest.mark.asyncio
    async def test_unlimited_metric_allows_any_amount(self, entitlement_service, session_factory):
        async with session_scope(session_factory) as session:
            plan = await PlanDAO(session).get_by_id("enterprise")
            plan.limits = {**plan.limits, "team_members": UNLIMITED}
        await SubscriptionFactory.create(session_factory, plan_id="enterprise")

        result = await entitlement_service.check_usage_limit("org-1", "team_members", 10**9)

        assert result.allowed is True
        assert result.limit == -1
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_inactive_denial_reports_limit_and_usage(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(
            session_factory, plan_id="pro", status=SubscriptionStatus.PAST_DUE
        )
        await entitlement_service.update_usage("org-1", "team_members", 2)

        result = await entitlement_service.check_usage_limit("org-1", "team_members", 1)

        assert result.allowed is False
        assert result.reason == "Subscription is not active (past_due)"
        assert result.limit == 10
        assert result.current_usage == 2


class TestUsageWrites:
    """Tests for update_usage and increment_api_requests."""

    @pytest.mark.asyncio
    async def test_update_usage_is_versioned_and_published(
        self, entitlement_service, session_factory, event_bus
    ):
        await SubscriptionFactory.create(session_factory)

        subscription = await entitlement_service.update_usage("org-1", "media_storage", 250)

        assert subscription.usage_media_storage == 250
        assert subscription.version == 2
        payloads = event_bus.of(SubscriptionEventKind.USAGE_UPDATED.value)
        assert payloads[-1]["usage"]["media_storage"] == 250

    @pytest.mark.asyncio
    async def test_update_usage_without_subscription(self, entitlement_service):
        with pytest.raises(SubscriptionNotFoundError):
            await entitlement_service.update_usage("org-none", "team_members", 1)

    @pytest.mark.asyncio
    async def test_update_usage_unknown_metric(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory)

        with pytest.raises(ValidationError):
            await entitlement_service.update_usage("org-1", "storage_gb", 1)

    @pytest.mark.asyncio
    async def test_increment_api_requests(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory)

        assert await entitlement_service.increment_api_requests("org-1") == 1
        assert await entitlement_service.increment_api_requests("org-1", 9) == 10

    @pytest.mark.asyncio
    async def test_increment_rejects_non_positive_delta(self, entitlement_service):
        with pytest.raises(ValidationError):
            await entitlement_service.increment_api_requests("org-1", 0)


class TestSummaries:
    """Tests for features, limits and the entitlement summary."""

    @pytest.mark.asyncio
    async def test_available_features_without_subscription(self, entitlement_service):
        features = await entitlement_service.get_available_features("org-none")

        assert features == list(BASIC_FEATURE_IDS)

    @pytest.mark.asyncio
    async def test_limits_of_active_plan(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="enterprise")

        limits = await entitlement_service.get_subscription_limits("org-1")

        assert limits["api_requests"] == 10000
        assert limits["team_members"] == 25

    @pytest.mark.asyncio
    async def test_exceeded_limits_after_downgrade(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="basic")
        await entitlement_service.update_usage("org-1", "team_members", 5)

        exceeded = await entitlement_service.check_exceeded_limits("org-1")

        assert [(e.metric, e.limit, e.current_usage) for e in exceeded] == [("team_members", 3, 5)]

    @pytest.mark.asyncio
    async def test_summary(self, entitlement_service, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        summary = await entitlement_service.get_summary("org-1")

        assert summary.plan_id == "pro"
        assert summary.is_active is True
        assert "full_statistics" in summary.features
        assert summary.limits["team_members"] == 10
