"""
Subscription service for user-initiated subscription changes.

WHAT: Starts trials, creates paid subscriptions, changes plans, cancels,
reactivates and updates payment and billing details.

WHY: User actions have to keep the provider and the local aggregate in
step:
1. The provider is called first, a provider failure leaves local state untouched
2. The aggregate is then mutated, saved with history and published
3. Writes to one organization's subscription never interleave

HOW: Each write runs under the organization's lock via run_serialized():
- a detached snapshot is read and validated
- the provider call runs once (with retry and backoff), outside any
  database transaction
- the aggregate is reloaded, mutated and saved in a session_scope; a
  version conflict re-runs only this step
- events are published after the commit
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from subscription_engine.core.config import Settings, settings as default_settings
from subscription_engine.core.exceptions import (
    PlanNotFoundError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    ValidationError,
)
from subscription_engine.db.session import session_scope
from subscription_engine.models.history import SubscriptionHistory
from subscription_engine.models.plan import SubscriptionPlan
from subscription_engine.models.subscription import (
    BILLING_FIELDS,
    Subscription,
    create_trial_subscription,
)
from subscription_engine.schemas.webhooks import ProviderSubscriptionData
from subscription_engine.services.billing_provider import (
    BillingProvider,
    new_idempotency_key,
    with_provider_retry,
)
from subscription_engine.services.concurrency import SubscriptionLocks, run_serialized
from subscription_engine.services.event_bus import EventBus
from subscription_engine.services.repository import SqlSubscriptionRepository
from subscription_engine.services.provider_sync import (
    convert_to_provider_subscription,
    create_from_provider,
)

logger = logging.getLogger(__name__)

ProviderCall = Callable[[Optional[Subscription]], Awaitable[Any]]
Mutation = Callable[[Subscription, Any], None]


class SubscriptionService:
    """
    User-facing subscription writes and reads.

    Attributes:
        session_factory: Factory for per-operation sessions
        provider: Billing provider port
        event_bus: Bus the saved events are published on
        locks: Per-organization write locks shared with the webhook reconciler
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        provider: BillingProvider,
        event_bus: EventBus,
        locks: Optional[SubscriptionLocks] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.event_bus = event_bus
        self.locks = locks or SubscriptionLocks()
        self.config = config or default_settings

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_subscription(self, org_id: str) -> Subscription:
        """
        Get an organization's subscription.

        Raises:
            SubscriptionNotFoundError: If the organization has none
        """
        subscription = await self._snapshot(org_id)
        if subscription is None:
            raise SubscriptionNotFoundError(org_id=org_id)
        return subscription

    async def get_history(
        self, org_id: str, event_type: Optional[str] = None
    ) -> List[SubscriptionHistory]:
        """History entries of an organization's subscription, oldest first."""
        async with self.session_factory() as session:
            repo = SqlSubscriptionRepository(session)
            subscription = await repo.get_subscription_by_organization_id(org_id)
            if subscription is None:
                raise SubscriptionNotFoundError(org_id=org_id)
            return await repo.get_subscription_history(subscription.id, event_type)

    async def list_plans(self) -> List[SubscriptionPlan]:
        async with self.session_factory() as session:
            return await SqlSubscriptionRepository(session).get_all_subscription_plans()

    # ========================================================================
    # Creation
    # ========================================================================

    async def start_trial(
        self,
        org_id: str,
        plan_id: str,
        billing: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        """
        Start a local trial, no provider involvement until conversion.

        Raises:
            PlanNotFoundError: If plan_id is not in the catalog
            SubscriptionAlreadyExistsError: If the organization has a subscription
        """

        async def attempt() -> Subscription:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                if await repo.get_subscription_plan_by_id(plan_id) is None:
                    raise PlanNotFoundError(plan_id=plan_id)
                if await repo.get_subscription_by_organization_id(org_id) is not None:
                    raise SubscriptionAlreadyExistsError(org_id=org_id)

                subscription = create_trial_subscription(
                    org_id=org_id,
                    plan_id=plan_id,
                    billing=billing,
                    trial_days=self.config.TRIAL_DAYS,
                    period_days=self.config.TRIAL_PERIOD_DAYS,
                    payment_provider=self.provider.name,
                )
                events = await repo.save_subscription(subscription)
            await self.event_bus.publish_events(events)
            logger.info(
                f"Started {plan_id} trial for org {org_id}",
                extra={"org_id": org_id, "plan_id": plan_id},
            )
            return subscription

        return await run_serialized(
            self.locks, org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    async def create_subscription(
        self,
        org_id: str,
        plan_id: str,
        payment_method_id: Optional[str] = None,
        billing: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        """
        Create a paid subscription with the provider and mirror it locally.

        WHAT:
        - no local subscription: a new aggregate is created
        - an unlinked trial or a canceled subscription: converted in place
          (linked, moved to the plan and the provider's status and period)
        - a linked subscription that is still running: rejected

        Raises:
            PlanNotFoundError: If plan_id is not in the catalog
            SubscriptionAlreadyExistsError: If a paid subscription is running
            ProviderError: If the provider still fails after retries
        """
        billing = dict(billing or {})
        unknown = sorted(set(billing) - set(BILLING_FIELDS))
        if unknown:
            raise ValidationError(
                message=f"Unknown billing fields: {', '.join(unknown)}", fields=unknown
            )
        plan = await self._require_plan(plan_id)
        idempotency_key = new_idempotency_key()

        async def provider_call(existing: Optional[Subscription]) -> ProviderSubscriptionData:
            if existing is not None and existing.provider_subscription_id and not existing.is_canceled:
                raise SubscriptionAlreadyExistsError(
                    org_id=org_id, provider_subscription_id=existing.provider_subscription_id
                )

            customer_id = existing.customer_id if existing is not None else None
            if not customer_id:
                customer_id = await self._with_retry(
                    lambda: self.provider.create_customer(
                        org_id, email=billing.get("email"), name=billing.get("name")
                    ),
                    "create_customer",
                )
            return await self._with_retry(
                lambda: self.provider.create_subscription(
                    customer_id,
                    plan,
                    payment_method_id=payment_method_id,
                    metadata={"organization_id": org_id, "plan_id": plan_id},
                    idempotency_key=idempotency_key,
                ),
                "create_subscription",
            )

        outcome: Dict[str, Any] = {}

        async def attempt() -> Subscription:
            if "provider" not in outcome:
                outcome["provider"] = await provider_call(await self._snapshot(org_id))
            remote: ProviderSubscriptionData = outcome["provider"]

            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_organization_id(org_id)
                if subscription is None:
                    subscription = create_from_provider(
                        org_id,
                        remote,
                        plan_id,
                        self.provider.name,
                        payment_method_id=payment_method_id,
                        billing=billing,
                    )
                else:
                    convert_to_provider_subscription(
                        subscription,
                        remote,
                        plan_id,
                        self.provider.name,
                        payment_method_id=payment_method_id,
                        billing=billing,
                    )
                events = await repo.save_subscription(subscription)

            await self.event_bus.publish_events(events)
            logger.info(
                f"Created {plan_id} subscription {remote.id} for org {org_id}",
                extra={"org_id": org_id, "plan_id": plan_id, "provider_subscription_id": remote.id},
            )
            return subscription

        return await run_serialized(
            self.locks, org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    # ========================================================================
    # Changes
    # ========================================================================

    async def change_plan(self, org_id: str, new_plan_id: str) -> Subscription:
        """
        Move a subscription to another plan.

        Returns the subscription unchanged when it is already on new_plan_id.

        Raises:
            PlanNotFoundError: If new_plan_id is not in the catalog
            ValidationError: If the subscription has ended
        """
        plan = await self._require_plan(new_plan_id)

        async def provider_call(subscription: Subscription) -> None:
            if subscription.is_canceled:
                raise ValidationError(
                    message="Canceled subscriptions cannot change plan",
                    subscription_id=subscription.id,
                )
            if subscription.plan_id == new_plan_id or not subscription.provider_subscription_id:
                return
            await self._with_retry(
                lambda: self.provider.update_subscription(
                    subscription.provider_subscription_id, plan=plan
                ),
                "update_subscription",
            )

        return await self._apply(
            org_id,
            lambda subscription, _: subscription.change_plan(new_plan_id),
            provider_call,
        )

    async def cancel_subscription(self, org_id: str, at_period_end: bool = True) -> Subscription:
        """
        Cancel now or at the end of the current period.

        Raises:
            ValidationError: If the subscription has already ended
        """

        async def provider_call(subscription: Subscription) -> None:
            if subscription.is_canceled:
                raise ValidationError(
                    message="Subscription is already canceled",
                    subscription_id=subscription.id,
                )
            if not subscription.provider_subscription_id:
                return
            await self._with_retry(
                lambda: self.provider.cancel_subscription(
                    subscription.provider_subscription_id, at_period_end=at_period_end
                ),
                "cancel_subscription",
            )

        return await self._apply(
            org_id,
            lambda subscription, _: subscription.cancel(at_period_end=at_period_end),
            provider_call,
        )

    async def reactivate(self, org_id: str) -> Subscription:
        """
        Undo a pending cancellation at period end.

        Raises:
            ValidationError: If nothing is pending or the subscription has ended
        """

        async def provider_call(subscription: Subscription) -> None:
            if subscription.is_canceled or not subscription.cancel_at_period_end:
                raise ValidationError(
                    message="Subscription is not scheduled for cancellation",
                    subscription_id=subscription.id,
                )
            if not subscription.provider_subscription_id:
                return
            await self._with_retry(
                lambda: self.provider.update_subscription(
                    subscription.provider_subscription_id, cancel_at_period_end=False
                ),
                "update_subscription",
            )

        return await self._apply(
            org_id, lambda subscription, _: subscription.reactivate(), provider_call
        )

    async def update_payment_method(self, org_id: str, payment_method_id: str) -> Subscription:
        """Set the payment method for future invoices."""
        if not payment_method_id:
            raise ValidationError(message="payment method id is required", org_id=org_id)

        async def provider_call(subscription: Subscription) -> None:
            if not subscription.provider_subscription_id:
                return
            await self._with_retry(
                lambda: self.provider.update_subscription(
                    subscription.provider_subscription_id, payment_method_id=payment_method_id
                ),
                "update_subscription",
            )

        return await self._apply(
            org_id,
            lambda subscription, _: subscription.update_payment_method(payment_method_id),
            provider_call,
        )

    async def update_billing_details(self, org_id: str, billing: Mapping[str, Any]) -> Subscription:
        """Merge fields into the billing profile (local only)."""
        billing = dict(billing)
        return await self._apply(
            org_id, lambda subscription, _: subscription.update_billing_details(billing)
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _apply(
        self,
        org_id: str,
        mutate: Mutation,
        provider_call: Optional[ProviderCall] = None,
    ) -> Subscription:
        """
        Serialized write: validate and call the provider once, then
        reload, mutate and save (retried on version conflicts).
        """
        outcome: Dict[str, Any] = {}

        async def attempt() -> Subscription:
            if provider_call is not None and "provider" not in outcome:
                snapshot = await self._snapshot(org_id)
                if snapshot is None:
                    raise SubscriptionNotFoundError(org_id=org_id)
                outcome["provider"] = await provider_call(snapshot)

            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_organization_id(org_id)
                if subscription is None:
                    raise SubscriptionNotFoundError(org_id=org_id)
                mutate(subscription, outcome.get("provider"))
                events = await repo.save_subscription(subscription)

            await self.event_bus.publish_events(events)
            return subscription

        return await run_serialized(
            self.locks, org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    async def _snapshot(self, org_id: str) -> Optional[Subscription]:
        """Read-only, detached copy of the organization's subscription."""
        async with self.session_factory() as session:
            return await SqlSubscriptionRepository(session).get_subscription_by_organization_id(org_id)

    async def _require_plan(self, plan_id: str) -> SubscriptionPlan:
        async with self.session_factory() as session:
            plan = await SqlSubscriptionRepository(session).get_subscription_plan_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id=plan_id)
        return plan

    async def _with_retry(self, call: Callable[[], Awaitable[Any]], operation: str) -> Any:
        return await with_provider_retry(
            call,
            attempts=self.config.PROVIDER_MAX_RETRIES,
            backoff_seconds=self.config.PROVIDER_RETRY_BACKOFF_SECONDS,
            operation=operation,
        )

