"""
Webhook reconciler for billing provider events.

WHAT: Applies verified provider webhooks to local subscriptions.

WHY: The provider is the source of truth for payment state. Webhooks are
how that truth reaches the engine:
1. checkout.session.completed creates the local subscription
2. invoice events move it between active and past_due
3. customer.subscription.* events mirror plan, period and cancellation

HOW:
- Every handled event type has an entry in the handler table, checked
  for completeness at construction
- Writes to one subscription are serialized with the same locks and
  retry policy as user-initiated writes
- Aggregate events, history and the subscription row are committed
  together; events are published and notifications sent after commit
- Handlers never leak exceptions: every failure becomes a WebhookResult
  with error set, and is published as webhook.processing_failed
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from subscription_engine.core.config import Settings, settings as default_settings
from subscription_engine.core.exceptions import (
    AppException,
    MissingOrganizationIdError,
    PlanNotFoundError,
    ProviderError,
    SubscriptionNotFoundError,
    ValidationError,
)
from subscription_engine.db.session import session_scope
from subscription_engine.models.events import DomainEvent, SubscriptionEventKind
from subscription_engine.models.notification import NotificationType
from subscription_engine.models.plan import SubscriptionPlan
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.schemas.webhooks import (
    CheckoutSessionData,
    InvoiceData,
    ProviderEvent,
    ProviderEventType,
    ProviderSubscriptionData,
    WebhookResult,
)
from subscription_engine.services.billing_provider import BillingProvider
from subscription_engine.services.concurrency import SubscriptionLocks, run_serialized
from subscription_engine.services.event_bus import EventBus
from subscription_engine.services.notification_service import NotificationService
from subscription_engine.services.provider_sync import (
    convert_to_provider_subscription,
    create_from_provider,
    map_provider_status,
    retrieve_with_timeout,
    sync_from_provider,
)
from subscription_engine.services.repository import SqlSubscriptionRepository

logger = logging.getLogger(__name__)

PROCESSING_FAILED_EVENT = "webhook.processing_failed"

# Events whose payload is the provider subscription itself
SUBSCRIPTION_EVENT_TYPES = (
    ProviderEventType.CUSTOMER_SUBSCRIPTION_UPDATED,
    ProviderEventType.CUSTOMER_SUBSCRIPTION_DELETED,
)

__all__ = ["WebhookReconciler", "map_provider_status", "PROCESSING_FAILED_EVENT"]


@dataclass
class Reconciliation:
    """
    What a handler changed, dispatched once the transaction commits.

    Fields:
    - events: Reconciliation events (payment_succeeded, updated, ...),
      written to history with the aggregate's own events
    - notifications: (notification_type, content, metadata) to send
    """

    events: List[DomainEvent] = field(default_factory=list)
    notifications: List[Tuple[NotificationType, Dict[str, str], Dict[str, Any]]] = field(
        default_factory=list
    )


Apply = Callable[[Subscription, SqlSubscriptionRepository], Awaitable[Reconciliation]]
Handler = Callable[[ProviderEvent], Awaitable[WebhookResult]]


class WebhookReconciler:
    """
    Dispatches provider events to reconciliation handlers.

    Attributes:
        session_factory: Factory for per-event sessions
        provider: Billing provider, for retrieving subscriptions
        event_bus: Bus for subscription and failure events
        notifications: Notification port for payment failures
        locks: Per-organization write locks shared with SubscriptionService
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        provider: BillingProvider,
        event_bus: EventBus,
        notifications: NotificationService,
        locks: Optional[SubscriptionLocks] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.event_bus = event_bus
        self.notifications = notifications
        self.locks = locks or SubscriptionLocks()
        self.config = config or default_settings

        self.handlers: Dict[ProviderEventType, Handler] = {
            ProviderEventType.CHECKOUT_SESSION_COMPLETED: self._on_checkout_completed,
            ProviderEventType.INVOICE_PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            ProviderEventType.INVOICE_PAYMENT_FAILED: self._on_payment_failed,
            ProviderEventType.CUSTOMER_SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            ProviderEventType.CUSTOMER_SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }
        missing = set(ProviderEventType) - set(self.handlers)
        if missing:
            raise RuntimeError(
                f"No webhook handler for: {', '.join(sorted(m.value for m in missing))}"
            )

    # ========================================================================
    # Entry point
    # ========================================================================

    async def handle_event(self, event: ProviderEvent) -> WebhookResult:
        """
        Reconcile one verified provider event.

        Returns:
            WebhookResult; handled=False for event types the engine does
            not process, error set when processing failed
        """
        event_type = event.event_type
        if event_type is None:
            logger.debug(
                f"Ignoring unhandled webhook event type {event.type}",
                extra={"event_id": event.id, "event_type": event.type},
            )
            return WebhookResult(handled=False, event_id=event.id, event_type=event.type)

        logger.info(
            f"Processing webhook {event.type} ({event.id})",
            extra={"event_id": event.id, "event_type": event.type},
        )
        try:
            return await self.handlers[event_type](event)
        except SubscriptionNotFoundError as e:
            return await self._on_unknown_subscription(event, e)
        except AppException as e:
            return await self._failed(event, e.message, type(e).__name__)
        except Exception as e:
            logger.exception(
                f"Unexpected error processing webhook {event.type} ({event.id})",
                extra={"event_id": event.id, "event_type": event.type},
            )
            return await self._failed(event, str(e) or type(e).__name__, type(e).__name__)

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _on_checkout_completed(self, event: ProviderEvent) -> WebhookResult:
        """
        Create the local subscription for a completed checkout.

        WHAT: Payment-mode checkouts are ignored. Re-delivery of an event
        whose subscription already exists changes nothing.
        """
        checkout = CheckoutSessionData.model_validate(event.data)
        if not checkout.is_subscription:
            return self._result(event, handled=False)

        org_id = checkout.organization_id
        if not org_id:
            raise MissingOrganizationIdError(checkout_session_id=checkout.id)
        if not checkout.subscription:
            raise ValidationError(
                message="Checkout session has no subscription",
                checkout_session_id=checkout.id,
            )

        existing = await self._find_by_provider_id(checkout.subscription)
        if existing is not None:
            logger.info(
                f"Subscription {checkout.subscription} already exists, skipping checkout {checkout.id}",
                extra={"org_id": org_id, "provider_subscription_id": checkout.subscription},
            )
            return self._result(event, handled=True, subscription_id=existing.id)

        remote = await retrieve_with_timeout(
            self.provider, checkout.subscription, self.config.PROVIDER_TIMEOUT_SECONDS
        )
        subscription = await self._create_or_convert(
            org_id, remote, checkout.plan_id or remote.plan_id, checkout.billing()
        )
        return self._result(event, handled=True, subscription_id=subscription.id)

    async def _on_payment_succeeded(self, event: ProviderEvent) -> WebhookResult:
        invoice = InvoiceData.model_validate(event.data)
        if not invoice.subscription:
            return self._result(event, handled=False)

        async def apply(subscription: Subscription, repo: SqlSubscriptionRepository) -> Reconciliation:
            subscription.update_status(SubscriptionStatus.ACTIVE)
            _apply_period(subscription, invoice.billing_period())
            return Reconciliation(
                events=[
                    _event(
                        subscription,
                        SubscriptionEventKind.PAYMENT_SUCCEEDED,
                        invoice_id=invoice.id,
                        amount=invoice.total,
                        currency=invoice.currency,
                    )
                ]
            )

        subscription = await self._reconcile(invoice.subscription, apply)
        return self._result(event, handled=True, subscription_id=subscription.id)

    async def _on_payment_failed(self, event: ProviderEvent) -> WebhookResult:
        invoice = InvoiceData.model_validate(event.data)
        if not invoice.subscription:
            return self._result(event, handled=False)

        async def apply(subscription: Subscription, repo: SqlSubscriptionRepository) -> Reconciliation:
            subscription.update_status(SubscriptionStatus.PAST_DUE)
            details = {
                "invoice_id": invoice.id,
                "attempt_count": invoice.attempt_count,
                "next_payment_attempt": invoice.next_payment_attempt,
            }
            if invoice.next_payment_attempt:
                retry_text = (
                    f" We will retry on {invoice.next_payment_attempt.strftime('%Y-%m-%d')}."
                )
            else:
                retry_text = ""
            return Reconciliation(
                events=[_event(subscription, SubscriptionEventKind.PAYMENT_FAILED, **details)],
                notifications=[
                    (
                        NotificationType.PAYMENT_FAILED,
                        {
                            "title": "Payment failed",
                            "message": (
                                "We could not process the payment for your subscription. "
                                f"Please update your payment method.{retry_text}"
                            ),
                        },
                        {"subscription_id": subscription.id, **details},
                    )
                ],
            )

        subscription = await self._reconcile(invoice.subscription, apply)
        return self._result(event, handled=True, subscription_id=subscription.id)

    async def _on_subscription_updated(self, event: ProviderEvent) -> WebhookResult:
        remote = ProviderSubscriptionData.model_validate(event.data)

        async def apply(subscription: Subscription, repo: SqlSubscriptionRepository) -> Reconciliation:
            sync_from_provider(subscription, remote)
            plan = await self._resolve_plan(repo, remote.plan_id, remote.product_id, required=False)
            if plan is not None:
                subscription.change_plan(plan.id)
            return Reconciliation(
                events=[
                    _event(
                        subscription,
                        SubscriptionEventKind.UPDATED,
                        status=subscription.status,
                        plan_id=subscription.plan_id,
                        cancel_at_period_end=subscription.cancel_at_period_end,
                    )
                ]
            )

        subscription = await self._reconcile(remote.id, apply)
        return self._result(event, handled=True, subscription_id=subscription.id)

    async def _on_subscription_deleted(self, event: ProviderEvent) -> WebhookResult:
        remote = ProviderSubscriptionData.model_validate(event.data)

        async def apply(subscription: Subscription, repo: SqlSubscriptionRepository) -> Reconciliation:
            subscription.update_status(SubscriptionStatus.CANCELED)
            return Reconciliation(
                events=[
                    _event(
                        subscription,
                        SubscriptionEventKind.CANCELED,
                        canceled_at=remote.canceled_at or subscription.canceled_at,
                    )
                ]
            )

        subscription = await self._reconcile(remote.id, apply)
        return self._result(event, handled=True, subscription_id=subscription.id)

    # ========================================================================
    # Backfill
    # ========================================================================

    async def backfill_from_provider(
        self,
        provider_subscription_id: str,
        remote: Optional[ProviderSubscriptionData] = None,
    ) -> Optional[Subscription]:
        """
        Create the local subscription for a provider subscription we missed.

        WHAT: Only possible when the provider subscription carries
        metadata.organization_id (set on every subscription the engine
        creates), otherwise nothing is done.

        Returns:
            The created subscription, or None if it cannot be attributed
        """
        if remote is None or not remote.organization_id:
            try:
                remote = await retrieve_with_timeout(
                    self.provider, provider_subscription_id, self.config.PROVIDER_TIMEOUT_SECONDS
                )
            except ProviderError as e:
                logger.warning(
                    f"Cannot backfill {provider_subscription_id}: {e.message}",
                    extra={"provider_subscription_id": provider_subscription_id},
                )
                return None
        if not remote.organization_id:
            return None
        logger.warning(
            f"Backfilling subscription {remote.id} for org {remote.organization_id}",
            extra={"org_id": remote.organization_id, "provider_subscription_id": remote.id},
        )
        return await self._create_or_convert(remote.organization_id, remote, remote.plan_id, {})

    async def _on_unknown_subscription(
        self, event: ProviderEvent, error: SubscriptionNotFoundError
    ) -> WebhookResult:
        """
        No local subscription for the event: try a backfill, then retry once.
        """
        provider_subscription_id = error.context.get("provider_subscription_id")
        logger.warning(
            f"Webhook {event.type} ({event.id}) references unknown subscription "
            f"{provider_subscription_id}",
            extra={"event_id": event.id, "provider_subscription_id": provider_subscription_id},
        )
        remote = None
        if event.event_type in SUBSCRIPTION_EVENT_TYPES:
            remote = ProviderSubscriptionData.model_validate(event.data)
        try:
            backfilled = (
                await self.backfill_from_provider(provider_subscription_id, remote)
                if provider_subscription_id
                else None
            )
            if backfilled is None:
                return self._result(
                    event,
                    handled=False,
                    error=error.message,
                    error_type=type(error).__name__,
                )
            result = await self.handlers[event.event_type](event)
        except AppException as e:
            return await self._failed(event, e.message, type(e).__name__)
        except Exception as e:
            logger.exception(
                f"Backfill failed for webhook {event.type} ({event.id})",
                extra={"event_id": event.id, "provider_subscription_id": provider_subscription_id},
            )
            return await self._failed(event, str(e) or type(e).__name__, type(e).__name__)
        result.backfilled = True
        return result

    # ========================================================================
    # Internals
    # ========================================================================

    async def _reconcile(
        self,
        provider_subscription_id: str,
        apply: Apply,
    ) -> Subscription:
        """
        Serialized load-apply-save of the subscription behind a provider id.

        Raises:
            SubscriptionNotFoundError: If no local subscription is linked
        """
        existing = await self._find_by_provider_id(provider_subscription_id)
        if existing is None:
            raise SubscriptionNotFoundError(
                provider_subscription_id=provider_subscription_id
            )

        async def attempt() -> Subscription:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_provider_id(provider_subscription_id)
                if subscription is None:
                    raise SubscriptionNotFoundError(
                        provider_subscription_id=provider_subscription_id
                    )
                outcome = await apply(subscription, repo)
                events = await repo.save_subscription(subscription)
                for event in outcome.events:
                    event.subscription_id = subscription.id
                    await repo.append_history(
                        subscription.id, event.kind.history_type, event.to_payload()
                    )

            await self.event_bus.publish_events(events + outcome.events)
            for notification_type, content, metadata in outcome.notifications:
                await self.notifications.send_notification(
                    subscription.org_id, notification_type, content, metadata
                )
            return subscription

        return await run_serialized(
            self.locks, existing.org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    async def _create_or_convert(
        self,
        org_id: str,
        remote: ProviderSubscriptionData,
        plan_id: Optional[str],
        billing: Dict[str, Any],
    ) -> Subscription:
        """
        Mirror a provider subscription for an organization.

        WHAT: Creates the aggregate, or converts the organization's trial
        or ended subscription. Idempotent on the provider subscription id.
        """

        async def attempt() -> Subscription:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                plan = await self._resolve_plan(repo, plan_id, remote.product_id, required=True)
                subscription = await repo.get_subscription_by_organization_id(org_id)
                if subscription is not None and subscription.provider_subscription_id == remote.id:
                    return subscription
                if subscription is None:
                    subscription = create_from_provider(
                        org_id, remote, plan.id, self.provider.name, billing=billing
                    )
                else:
                    convert_to_provider_subscription(
                        subscription, remote, plan.id, self.provider.name, billing=billing
                    )
                events = await repo.save_subscription(subscription)
            await self.event_bus.publish_events(events)
            logger.info(
                f"Created subscription {subscription.id} for org {org_id} from provider {remote.id}",
                extra={"org_id": org_id, "provider_subscription_id": remote.id},
            )
            return subscription

        return await run_serialized(
            self.locks, org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    async def _resolve_plan(
        self,
        repo: SqlSubscriptionRepository,
        plan_id: Optional[str],
        product_id: Optional[str],
        required: bool,
    ) -> Optional[SubscriptionPlan]:
        """Plan from metadata plan_id, else from the provider product."""
        plan = await repo.get_subscription_plan_by_id(plan_id) if plan_id else None
        if plan is None and product_id:
            plan = await repo.get_subscription_plan_by_provider_product(product_id)
        if plan is None and required:
            raise PlanNotFoundError(plan_id=plan_id, provider_product_id=product_id)
        return plan

    async def _find_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        async with self.session_factory() as session:
            repo = SqlSubscriptionRepository(session)
            return await repo.get_subscription_by_provider_id(provider_subscription_id)

    async def _failed(self, event: ProviderEvent, message: str, error_type: str) -> WebhookResult:
        logger.error(
            f"Webhook {event.type} ({event.id}) failed: {message}",
            extra={"event_id": event.id, "event_type": event.type, "error_type": error_type},
        )
        await self.event_bus.publish(
            PROCESSING_FAILED_EVENT,
            {
                "event_id": event.id,
                "event_type": event.type,
                "error": message,
                "error_type": error_type,
            },
        )
        return self._result(event, handled=False, error=message, error_type=error_type)

    def _result(self, event: ProviderEvent, **fields: Any) -> WebhookResult:
        return WebhookResult(event_id=event.id, event_type=event.type, **fields)


def _event(subscription: Subscription, kind: SubscriptionEventKind, **data: Any) -> DomainEvent:
    return DomainEvent(
        kind=kind,
        org_id=subscription.org_id,
        subscription_id=subscription.id,
        data=data,
    )


def _apply_period(subscription: Subscription, period) -> None:
    if period is not None and period != (
        subscription.current_period_start,
        subscription.current_period_end,
    ):
        subscription.update_period(*period)
