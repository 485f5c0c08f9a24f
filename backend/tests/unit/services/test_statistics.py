"""
Unit tests for the statistics snapshot builders.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from subscription_engine.models.events import SubscriptionEventKind
from subscription_engine.models.history import SubscriptionHistory
from subscription_engine.models.plan import PlanTier, SubscriptionPlan
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.services.statistics import (
    ACTIVITY_HANDLERS,
    build_statistics,
    check_activity_handlers,
    monthly_recurring_revenue,
    summarize_activity,
)

NOW = datetime(2024, 3, 4, 7, 0, 0)
TIERS = {"basic": PlanTier.BASIC, "pro": PlanTier.PRO, "enterprise": PlanTier.ENTERPRISE}


def entry(event_type: str, **data) -> SubscriptionHistory:
    return SubscriptionHistory(subscription_id=1, event_type=event_type, event_data=data)


def plan(plan_id: str, tier: PlanTier, monthly: str) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=plan_id,
        tier=tier,
        display_name=plan_id.title(),
        price_monthly=Decimal(monthly),
        price_yearly=Decimal(monthly) * 10,
        currency="SEK",
        features=[],
        limits={},
    )


def subscription(plan_id: str, status: SubscriptionStatus) -> Subscription:
    return Subscription(org_id=f"org-{plan_id}-{status.value}", plan_id=plan_id, status=status)


class TestActivity:
    """Tests for summarize_activity."""

    def test_every_event_kind_has_a_handler(self):
        check_activity_handlers(ACTIVITY_HANDLERS)

    def test_missing_handler_is_rejected(self):
        handlers = dict(ACTIVITY_HANDLERS)
        del handlers[SubscriptionEventKind.EXPIRED]

        with pytest.raises(RuntimeError, match="subscription.expired"):
            check_activity_handlers(handlers)

    def test_upgrades_and_downgrades(self):
        activity = summarize_activity(
            [
                entry("plan_changed", old_plan_id="basic", new_plan_id="enterprise"),
                entry("plan_changed", old_plan_id="enterprise", new_plan_id="pro"),
                entry("plan_changed", old_plan_id="pro", new_plan_id="retired"),
            ],
            TIERS,
        )

        assert activity["plan_changes"] == 3
        assert activity["upgrades"] == 1
        assert activity["downgrades"] == 1

    def test_reminders_and_unknown_entries(self):
        activity = summarize_activity(
            [
                entry("renewal_reminder"),
                entry("expiry_reminder"),
                entry("payment_reminder"),
                entry("usage_updated"),
                entry("legacy_event"),
            ],
            TIERS,
        )

        assert activity["reminders_sent"] == 3
        assert activity["unknown"] == 1


class TestRevenue:
    """Tests for monthly_recurring_revenue and build_statistics."""

    def test_mrr_counts_active_subscriptions_only(self):
        plans = {"pro": plan("pro", PlanTier.PRO, "299"), "enterprise": plan("enterprise", PlanTier.ENTERPRISE, "999")}
        subscriptions = [
            subscription("pro", SubscriptionStatus.ACTIVE),
            subscription("enterprise", SubscriptionStatus.ACTIVE),
            subscription("pro", SubscriptionStatus.TRIALING),
            subscription("enterprise", SubscriptionStatus.PAST_DUE),
        ]

        assert monthly_recurring_revenue(subscriptions, plans) == 1298.0

    def test_build_statistics(self):
        plans = [plan("pro", PlanTier.PRO, "299")]
        active = [subscription("pro", SubscriptionStatus.ACTIVE)]

        statistics = build_statistics(
            counts={("pro", "active"): 1, ("pro", "past_due"): 2},
            plans=plans,
            active_subscriptions=active,
            history=[entry("created")],
            currency="SEK",
            now=NOW,
        )

        assert statistics["captured_at"] == NOW.isoformat()
        assert statistics["window_start"] == datetime(2024, 2, 26, 7, 0, 0).isoformat()
        assert statistics["total_active"] == 1
        assert statistics["total_past_due"] == 2
        assert statistics["totals_by_status"]["canceled"] == 0
        assert statistics["by_tier"] == {"pro": {"active": 1, "past_due": 2}}
        assert statistics["active_by_plan"] == {"pro": 1}
        assert statistics["mrr"] == 299.0
        assert statistics["activity"]["new_subscriptions"] == 1
