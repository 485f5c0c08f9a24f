"""
Unit tests for WebhookReconciler.

WHAT: Each handled provider event type, re-delivery, backfill of missed
subscriptions and the failure path.

WHY: Webhooks are how payment state reaches the engine. A handler that
raises instead of reporting, or applies an event twice, leaves an
organization with the wrong access until the next sync.
"""

from datetime import datetime

import pytest

from subscription_engine.models.events import SubscriptionEventKind
from subscription_engine.models.notification import NotificationType
from subscription_engine.models.subscription import SubscriptionStatus
from subscription_engine.schemas.webhooks import InvoiceData
from subscription_engine.services.webhook_reconciler import (
    PROCESSING_FAILED_EVENT,
    map_provider_status,
)
from tests.factories import (
    SubscriptionFactory,
    checkout_completed,
    invoice_event,
    provider_event,
    provider_subscription,
)


class TestCheckoutCompleted:
    """Tests for checkout.session.completed."""

    @pytest.mark.asyncio
    async def test_creates_subscription(self, reconciler, provider, session_factory):
        provider.register(provider_subscription())

        result = await reconciler.handle_event(checkout_completed())

        assert result.handled is True
        assert result.error is None
        subscription = await SubscriptionFactory.reload(session_factory, "org-1")
        assert result.subscription_id == subscription.id
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_id == "pro"
        assert subscription.provider_subscription_id == "sub_123"
        assert subscription.billing_email == "billing@example.com"

    @pytest.mark.asyncio
    async def test_redelivery_changes_nothing(self, reconciler, provider, event_bus):
        provider.register(provider_subscription())

        first = await reconciler.handle_event(checkout_completed())
        second = await reconciler.handle_event(checkout_completed())

        assert second.handled is True
        assert second.subscription_id == first.subscription_id
        assert event_bus.names().count(SubscriptionEventKind.CREATED.value) == 1

    @pytest.mark.asyncio
    async def test_converts_existing_trial(self, reconciler, provider, session_factory):
        trial = await SubscriptionFactory.create(
            session_factory, plan_id="basic", status=SubscriptionStatus.TRIALING
        )
        provider.register(provider_subscription(plan_id="enterprise"))

        result = await reconciler.handle_event(checkout_completed(plan_id="enterprise"))

        assert result.subscription_id == trial.id
        subscription = await SubscriptionFactory.reload(session_factory, "org-1")
        assert subscription.plan_id == "enterprise"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.provider_subscription_id == "sub_123"

    @pytest.mark.asyncio
    async def test_payment_mode_is_ignored(self, reconciler, session_factory):
        result = await reconciler.handle_event(checkout_completed(mode="payment"))

        assert result.handled is False
        assert result.error is None
        assert await SubscriptionFactory.reload(session_factory, "org-1") is None

    @pytest.mark.asyncio
    async def test_missing_organization_id(self, reconciler, event_bus):
        result = await reconciler.handle_event(checkout_completed(org_id=None))

        assert result.received is True
        assert result.handled is False
        assert result.error_type == "MissingOrganizationIdError"
        failures = event_bus.of(PROCESSING_FAILED_EVENT)
        assert len(failures) == 1
        assert failures[0]["event_id"] == "evt_checkout"


class TestInvoiceEvents:
    """Tests for invoice.payment_succeeded and invoice.payment_failed."""

    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due_and_notifies_once(
        self, reconciler, session_factory, notification_service, event_bus
    ):
        await SubscriptionFactory.create(session_factory, provider_subscription_id="sub_123")
        # 2024-06-01 00:00:00 UTC
        event = invoice_event("invoice.payment_failed", next_payment_attempt=1717200000)

        result = await reconciler.handle_event(event)

        assert result.handled is True
        subscription = await SubscriptionFactory.reload(session_factory, "org-1")
        assert subscription.status == SubscriptionStatus.PAST_DUE

        notifications = await notification_service.list_notifications("org-1")
        assert len(notifications) == 1
        assert notifications[0].notification_type == NotificationType.PAYMENT_FAILED
        assert "2024-06-01" in notifications[0].message

        payloads = event_bus.of(SubscriptionEventKind.PAYMENT_FAILED.value)
        assert len(payloads) == 1
        assert payloads[0]["invoice_id"] == "in_test_1"

    @pytest.mark.asyncio
    async def test_payment_succeeded_reactivates(self, reconciler, session_factory):
        await SubscriptionFactory.create(
            session_factory, status=SubscriptionStatus.PAST_DUE, provider_subscription_id="sub_123"
        )

        result = await reconciler.handle_event(invoice_event("invoice.payment_succeeded"))

        assert result.handled is True
        subscription = await SubscriptionFactory.reload(session_factory, "org-1")
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_ignored(self, reconciler):
        result = await reconciler.handle_event(
            invoice_event("invoice.payment_failed", subscription_id=None)
        )

        assert result.handled is False
        assert result.error is None


class TestSubscriptionEvents:
    """Tests for customer.subscription.updated and customer.subscription.deleted."""

    @pytest.mark.asyncio
    async def test_updated_mirrors_plan_period_and_cancel_flag(self, reconciler, session_factory):
        await SubscriptionFactory.create(session_factory, provider_subscription_id="sub_123")
        remote = provider_subscription(plan_id="enterprise", cancel_at_period_end=True)

        result = await reconciler.handle_event(
            provider_event("customer.subscription.updated", remote.model_dump(mode="json"))
        )

        assert result.handled is True
        subscription = await SubscriptionFactory.reload(session_factory, "org-1")
        assert subscription.plan_id == "enterprise"
        assert subscription.cancel_at_period_end is True
        assert subscription.current_period_end == remote.current_period_end
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_deleted_cancels(self, reconciler, session_factory, event_bus):
        await SubscriptionFactory.create(session_factory, provider_subscription_id="sub_123")
        remote = provider_subscription(status="canceled")

        result = await reconciler.handle_event(
            provider_event("customer.subscription.deleted", remote.model_dump(mode="json"))
        )

        assert result.handled is True
        subscription = await SubscriptionFactory.reload(session_factory, "org-1")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert SubscriptionEventKind.CANCELED.value in event_bus.names()

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_backfilled_from_metadata(self, reconciler, session_factory):
        remote = provider_subscription(subscription_id="sub_missed", org_id="org-2")

        result = await reconciler.handle_event(
            provider_event("customer.subscription.updated", remote.model_dump(mode="json"))
        )

        assert result.handled is True
        assert result.backfilled is True
        subscription = await SubscriptionFactory.reload(session_factory, "org-2")
        assert subscription.provider_subscription_id == "sub_missed"
        assert result.subscription_id == subscription.id

    @pytest.mark.asyncio
    async def test_unknown_subscription_without_metadata(self, reconciler):
        result = await reconciler.handle_event(
            invoice_event("invoice.payment_failed", subscription_id="sub_unknown")
        )

        assert result.handled is False
        assert result.backfilled is False
        assert result.error_type == "SubscriptionNotFoundError"


class TestDispatch:
    """Tests for event routing and status mapping."""

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, reconciler, event_bus):
        result = await reconciler.handle_event(provider_event("customer.created", {"id": "cus_1"}))

        assert result.received is True
        assert result.handled is False
        assert result.error is None
        assert event_bus.names() == []

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.UNPAID),
            ("canceled", SubscriptionStatus.CANCELED),
            ("incomplete_expired", SubscriptionStatus.CANCELED),
            ("paused", SubscriptionStatus.INCOMPLETE),
            (None, SubscriptionStatus.INCOMPLETE),
        ],
    )
    def test_map_provider_status(self, raw, expected):
        assert map_provider_status(raw) == expected

    def test_invoice_timestamps_are_naive_utc(self):
        event = invoice_event("invoice.payment_failed", next_payment_attempt=1717200000)

        invoice = InvoiceData.model_validate(event.data)

        assert invoice.next_payment_attempt == datetime(2024, 6, 1)
        assert invoice.subscription == "sub_123"
