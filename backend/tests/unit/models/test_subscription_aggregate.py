"""
Unit tests for the Subscription aggregate.

WHAT: Tests lifecycle mutations, their invariants and the events they buffer.

WHY: Every status, period and usage change in the engine goes through
these methods. If one of them skips a check or forgets its event, the
history log and the event bus silently drift from the database.
"""

from datetime import datetime, timedelta

import pytest

from subscription_engine.core.exceptions import InvalidPeriodError, ValidationError
from subscription_engine.models.events import SubscriptionEventKind
from subscription_engine.models.plan import UsageMetric
from subscription_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    create_trial_subscription,
)


NOW = datetime(2024, 3, 1, 12, 0, 0)


def make_subscription(**overrides) -> Subscription:
    fields = dict(
        org_id="org-1",
        plan_id="pro",
        status=SubscriptionStatus.ACTIVE,
        current_period_start=NOW,
        current_period_end=NOW + timedelta(days=30),
        now=NOW,
    )
    fields.update(overrides)
    subscription = Subscription.create(**fields)
    subscription.flush_events()
    return subscription


class TestCreate:
    """Tests for the factories."""

    def test_create_buffers_created_event(self):
        subscription = Subscription.create(
            org_id="org-1",
            plan_id="pro",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=NOW,
            current_period_end=NOW + timedelta(days=30),
        )

        events = subscription.flush_events()
        assert [e.kind for e in events] == [SubscriptionEventKind.CREATED]
        assert events[0].data["plan_id"] == "pro"
        assert subscription.usage_api_requests == 0

    def test_create_rejects_inverted_period(self):
        with pytest.raises(InvalidPeriodError):
            Subscription.create(
                org_id="org-1",
                plan_id="pro",
                status=SubscriptionStatus.ACTIVE,
                current_period_start=NOW,
                current_period_end=NOW,
            )

    def test_create_requires_org_and_plan(self):
        with pytest.raises(ValidationError):
            make_subscription(org_id="")
        with pytest.raises(ValidationError):
            make_subscription(plan_id="")

    def test_create_rejects_unknown_billing_fields(self):
        with pytest.raises(ValidationError):
            make_subscription(billing={"phone": "123"})

    def test_trial_subscription(self):
        subscription = create_trial_subscription("org-1", "pro", now=NOW, trial_days=14, period_days=30)

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_end == NOW + timedelta(days=14)
        assert subscription.current_period_end == NOW + timedelta(days=30)
        assert subscription.is_active is True
        assert subscription.days_left_in_trial(NOW) == 14


class TestMutations:
    """Tests for status, period, plan and cancel mutations."""

    def test_update_status_records_old_and_new(self):
        subscription = make_subscription()

        assert subscription.update_status(SubscriptionStatus.PAST_DUE) is True

        events = subscription.flush_events()
        assert len(events) == 1
        assert events[0].kind == SubscriptionEventKind.STATUS_CHANGED
        assert events[0].data["old_status"] == SubscriptionStatus.ACTIVE
        assert events[0].data["new_status"] == SubscriptionStatus.PAST_DUE

    def test_update_status_to_same_status_is_a_no_op(self):
        subscription = make_subscription()

        assert subscription.update_status(SubscriptionStatus.ACTIVE) is False
        assert subscription.flush_events() == []

    def test_update_period_rejects_invalid_range_and_keeps_state(self):
        subscription = make_subscription()
        original = (subscription.current_period_start, subscription.current_period_end)

        with pytest.raises(InvalidPeriodError):
            subscription.update_period(NOW + timedelta(days=5), NOW)

        assert (subscription.current_period_start, subscription.current_period_end) == original
        assert subscription.flush_events() == []

    def test_cancel_at_period_end_keeps_access(self):
        subscription = make_subscription()

        subscription.cancel(at_period_end=True)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancel_at_period_end is True
        assert subscription.canceled_at is not None
        assert subscription.is_pending_cancellation is True
        assert [e.kind for e in subscription.flush_events()] == [SubscriptionEventKind.CANCELLED]

    def test_cancel_immediately(self):
        subscription = make_subscription()

        subscription.cancel(at_period_end=False)

        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.is_active is False
        events = subscription.flush_events()
        assert len(events) == 1
        assert events[0].data["previous_status"] == SubscriptionStatus.ACTIVE

    def test_reactivate_clears_pending_cancellation(self):
        subscription = make_subscription()
        subscription.cancel(at_period_end=True)
        subscription.flush_events()

        subscription.reactivate()

        assert subscription.cancel_at_period_end is False
        assert subscription.canceled_at is None
        assert [e.kind for e in subscription.flush_events()] == [SubscriptionEventKind.REACTIVATED]

    def test_reactivate_requires_pending_cancellation(self):
        subscription = make_subscription()

        with pytest.raises(ValidationError):
            subscription.reactivate()

    def test_change_plan(self):
        subscription = make_subscription()

        assert subscription.change_plan("enterprise") is True
        assert subscription.change_plan("enterprise") is False

        events = subscription.flush_events()
        assert len(events) == 1
        assert events[0].data == {"old_plan_id": "pro", "new_plan_id": "enterprise"}

    def test_update_usage_accepts_camel_case_and_rejects_negative(self):
        subscription = make_subscription()

        subscription.update_usage({"teamMembers": 4, UsageMetric.MEDIA_STORAGE: 120})

        assert subscription.current_usage(UsageMetric.TEAM_MEMBERS) == 4
        assert subscription.current_usage(UsageMetric.MEDIA_STORAGE) == 120
        with pytest.raises(ValidationError):
            subscription.update_usage({"team_members": -1})

    def test_update_usage_rejects_untracked_metric(self):
        subscription = make_subscription()

        with pytest.raises(ValidationError):
            subscription.update_usage({UsageMetric.CONCURRENT_USERS: 3})

    def test_link_provider_refuses_second_running_subscription(self):
        subscription = make_subscription(customer_id="cus_1", provider_subscription_id="sub_1")

        with pytest.raises(ValidationError):
            subscription.link_provider("cus_1", "sub_2")

    def test_link_provider_after_cancellation(self):
        subscription = make_subscription(customer_id="cus_1", provider_subscription_id="sub_1")
        subscription.cancel(at_period_end=False)

        subscription.link_provider("cus_1", "sub_2", "stripe")

        assert subscription.provider_subscription_id == "sub_2"

    def test_update_billing_details_publishes_field_names_only(self):
        subscription = make_subscription()

        subscription.update_billing_details({"email": "billing@example.com", "vat_number": "SE1"})

        assert subscription.billing["email"] == "billing@example.com"
        events = subscription.flush_events()
        assert events[0].data == {"fields": ["email", "vat_number"]}


class TestEvents:
    """Tests for the event buffer."""

    def test_flush_events_drains_the_buffer(self):
        subscription = make_subscription()
        subscription.change_plan("basic")
        subscription.update_status(SubscriptionStatus.PAST_DUE)

        first = subscription.flush_events()
        second = subscription.flush_events()

        assert [e.kind for e in first] == [
            SubscriptionEventKind.PLAN_CHANGED,
            SubscriptionEventKind.STATUS_CHANGED,
        ]
        assert second == []

    def test_payload_is_json_safe(self):
        subscription = make_subscription()
        subscription.update_period(NOW + timedelta(days=30), NOW + timedelta(days=60))

        payload = subscription.flush_events()[0].to_payload()

        assert payload["organization_id"] == "org-1"
        assert payload["current_period_end"] == (NOW + timedelta(days=60)).isoformat()


class TestQueries:
    """Tests for derived values."""

    def test_days_until_renewal_rounds_up(self):
        subscription = make_subscription()

        assert subscription.days_until_renewal(NOW + timedelta(days=29, hours=1)) == 1
        assert subscription.days_until_renewal(NOW) == 30

    @pytest.mark.parametrize(
        "status,active",
        [
            (SubscriptionStatus.ACTIVE, True),
            (SubscriptionStatus.TRIALING, True),
            (SubscriptionStatus.PAST_DUE, False),
            (SubscriptionStatus.CANCELED, False),
            (SubscriptionStatus.UNPAID, False),
            (SubscriptionStatus.INCOMPLETE, False),
        ],
    )
    def test_is_active(self, status, active):
        assert make_subscription(status=status).is_active is active
