"""
Billing provider port and implementations.

WHAT: The interface the engine uses to talk to the external billing
system, a Stripe implementation, and a null-object implementation.

WHY: The provider is the source of truth for payment state, but the
engine must keep working in local development and tests without it:
1. Services depend on BillingProvider only
2. BILLING_PROVIDER selects the implementation explicitly at startup
3. Every provider failure surfaces as ProviderError (or its timeout
   subclass), never as an SDK exception

HOW:
- The Stripe SDK is synchronous, so calls run in a worker thread under
  asyncio.wait_for() with PROVIDER_TIMEOUT_SECONDS
- Webhook signatures are verified with stripe.Webhook.construct_event
- with_provider_retry() adds exponential backoff for user-initiated writes
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import stripe
from pydantic import ValidationError as PydanticValidationError

from subscription_engine.core.config import Settings, settings as default_settings
from subscription_engine.core.exceptions import (
    ProviderError,
    ProviderTimeoutError,
    ValidationError,
    WebhookError,
    WebhookSignatureError,
)
from subscription_engine.models.plan import SubscriptionPlan
from subscription_engine.schemas.webhooks import ProviderEvent, ProviderSubscriptionData

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BillingProvider(ABC):
    """Abstract billing provider."""

    name: str = "abstract"

    @abstractmethod
    async def create_customer(
        self, org_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> str:
        """
        Create a customer for an organization.

        Returns:
            Provider customer id (cus_xxx)
        """

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        plan: SubscriptionPlan,
        payment_method_id: Optional[str] = None,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscriptionData:
        """Create a subscription to a plan's provider product."""

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, **changes: Any
    ) -> ProviderSubscriptionData:
        """
        Update a provider subscription.

        Supported changes: plan (SubscriptionPlan), cancel_at_period_end,
        payment_method_id, metadata.
        """

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscriptionData:
        """Fetch the provider's current view of a subscription."""

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> ProviderSubscriptionData:
        """Cancel now, or flag the subscription to end with its period."""

    @abstractmethod
    def verify_webhook(
        self, raw_body: bytes, signature: str, secret: Optional[str]
    ) -> ProviderEvent:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: If the signature or payload is invalid
        """


# ============================================================================
# Stripe
# ============================================================================


class StripeBillingProvider(BillingProvider):
    """
    Stripe-backed billing provider.

    NOTE: Plans map to Stripe prices through provider_product_id. A plan
    without one cannot be purchased through Stripe.
    """

    name = "stripe"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        if api_key:
            stripe.api_key = api_key
        if api_version:
            stripe.api_version = api_version  # Pin API version for stable payload shapes
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking SDK call in a thread with a timeout.

        Raises:
            ProviderTimeoutError: If the call exceeds timeout_seconds
            ProviderError: If Stripe reports an error
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                f"Stripe {operation} timed out after {self.timeout_seconds}s",
                extra={"operation": operation},
            )
            raise ProviderTimeoutError(
                message=f"Billing provider timed out during {operation}",
                operation=operation,
            ) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}", extra={"operation": operation})
            raise ProviderError(
                message=f"Billing provider error during {operation}",
                operation=operation,
                provider_error=str(e),
            ) from e

    async def create_customer(
        self, org_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> str:
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"organization_id": str(org_id)},
        )
        logger.info(
            f"Created Stripe customer {customer['id']} for org {org_id}",
            extra={"customer_id": customer["id"], "org_id": org_id},
        )
        return customer["id"]

    async def create_subscription(
        self,
        customer_id: str,
        plan: SubscriptionPlan,
        payment_method_id: Optional[str] = None,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscriptionData:
        price_id = await self._price_for(plan)
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": {"plan_id": plan.id, **(metadata or {})},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        if trial_days:
            params["trial_period_days"] = trial_days
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        subscription = await self._call("create_subscription", stripe.Subscription.create, **params)
        logger.info(
            f"Created Stripe subscription {subscription['id']} on plan {plan.id}",
            extra={"provider_subscription_id": subscription["id"], "customer_id": customer_id},
        )
        return _parse_subscription(subscription)

    async def update_subscription(
        self, subscription_id: str, **changes: Any
    ) -> ProviderSubscriptionData:
        params: Dict[str, Any] = {}
        plan = changes.get("plan")
        if plan is not None:
            current = await self._call(
                "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
            )
            items = current["items"]["data"]
            price_id = await self._price_for(plan)
            params["items"] = [{"id": items[0]["id"], "price": price_id}] if items else [{"price": price_id}]
            params["metadata"] = {"plan_id": plan.id}
        if "cancel_at_period_end" in changes:
            params["cancel_at_period_end"] = bool(changes["cancel_at_period_end"])
        if changes.get("payment_method_id"):
            params["default_payment_method"] = changes["payment_method_id"]
        if changes.get("metadata"):
            params["metadata"] = {**params.get("metadata", {}), **changes["metadata"]}

        subscription = await self._call(
            "update_subscription", stripe.Subscription.modify, subscription_id, **params
        )
        return _parse_subscription(subscription)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscriptionData:
        subscription = await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return _parse_subscription(subscription)

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> ProviderSubscriptionData:
        if at_period_end:
            subscription = await self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            subscription = await self._call(
                "cancel_subscription", stripe.Subscription.cancel, subscription_id
            )
        logger.info(
            f"Cancelled Stripe subscription {subscription_id} (at_period_end={at_period_end})",
            extra={"provider_subscription_id": subscription_id},
        )
        return _parse_subscription(subscription)

    def verify_webhook(
        self, raw_body: bytes, signature: str, secret: Optional[str]
    ) -> ProviderEvent:
        if not secret:
            raise WebhookError(message="Webhook signing secret is not configured")
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError() from e
        except ValueError as e:
            logger.warning(f"Webhook payload is not valid JSON: {e}")
            raise WebhookSignatureError(message="Invalid webhook payload") from e
        return _parse_event(_to_plain(event))

    async def _price_for(self, plan: SubscriptionPlan) -> str:
        """Default price of the plan's Stripe product."""
        if not plan.provider_product_id:
            raise ValidationError(
                message=f"Plan {plan.id} is not linked to a billing provider product",
                plan_id=plan.id,
            )
        product = await self._call("retrieve_product", stripe.Product.retrieve, plan.provider_product_id)
        price = product.get("default_price")
        price_id = price.get("id") if isinstance(price, dict) else price
        if not price_id:
            raise ProviderError(
                message=f"Product for plan {plan.id} has no default price",
                plan_id=plan.id,
            )
        return price_id


def _to_plain(obj: Any) -> Any:
    """Convert SDK objects to plain dicts and lists."""
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {key: _to_plain(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_to_plain(value) for value in obj]
    return obj


def _parse_subscription(obj: Any) -> ProviderSubscriptionData:
    try:
        return ProviderSubscriptionData.model_validate(_to_plain(obj))
    except PydanticValidationError as e:
        raise ProviderError(
            message="Billing provider returned an unexpected subscription shape",
            provider_error=str(e),
        ) from e


def _parse_event(payload: Any) -> ProviderEvent:
    try:
        return ProviderEvent.model_validate(payload)
    except PydanticValidationError as e:
        raise WebhookSignatureError(message="Invalid webhook payload") from e


# ============================================================================
# Null object
# ============================================================================


class NoOpBillingProvider(BillingProvider):
    """
    Billing provider that talks to nothing.

    WHAT: Creates deterministic local ids, keeps the subscriptions it
    "created" in memory and accepts any webhook signature.

    WHY: Local development and tests run the full engine, webhooks
    included, without provider credentials.
    """

    name = "noop"

    def __init__(self, period_days: int = 30):
        self.period_days = period_days
        self.subscriptions: Dict[str, ProviderSubscriptionData] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_noop_{self._counter}"

    def register(self, subscription: ProviderSubscriptionData) -> None:
        """Make a subscription retrievable, e.g. one created by a webhook fixture."""
        self.subscriptions[subscription.id] = subscription

    async def create_customer(
        self, org_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> str:
        return f"cus_noop_{org_id}"

    async def create_subscription(
        self,
        customer_id: str,
        plan: SubscriptionPlan,
        payment_method_id: Optional[str] = None,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscriptionData:
        now = datetime.utcnow()
        subscription = ProviderSubscriptionData(
            id=self._next_id("sub"),
            customer=customer_id,
            status="trialing" if trial_days else "active",
            current_period_start=now,
            current_period_end=now + timedelta(days=self.period_days),
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
            metadata={"plan_id": plan.id, **(metadata or {})},
            items={"data": [{"price": {"id": f"price_noop_{plan.id}", "product": plan.provider_product_id}}]},
        )
        self.register(subscription)
        return subscription

    async def update_subscription(
        self, subscription_id: str, **changes: Any
    ) -> ProviderSubscriptionData:
        subscription = self._get(subscription_id)
        updates: Dict[str, Any] = {}
        plan = changes.get("plan")
        if plan is not None:
            updates["metadata"] = {**subscription.metadata, "plan_id": plan.id}
            updates["items"] = {
                "data": [{"price": {"id": f"price_noop_{plan.id}", "product": plan.provider_product_id}}]
            }
        if "cancel_at_period_end" in changes:
            updates["cancel_at_period_end"] = bool(changes["cancel_at_period_end"])
        if changes.get("metadata"):
            updates["metadata"] = {**updates.get("metadata", subscription.metadata), **changes["metadata"]}
        updated = ProviderSubscriptionData.model_validate({**subscription.model_dump(), **updates})
        self.register(updated)
        return updated

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscriptionData:
        return self._get(subscription_id)

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> ProviderSubscriptionData:
        subscription = self._get(subscription_id)
        if at_period_end:
            updates = {"cancel_at_period_end": True}
        else:
            updates = {"status": "canceled", "canceled_at": datetime.utcnow()}
        updated = subscription.model_copy(update=updates)
        self.register(updated)
        return updated

    def verify_webhook(
        self, raw_body: bytes, signature: str, secret: Optional[str]
    ) -> ProviderEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookSignatureError(message="Invalid webhook payload") from e
        return _parse_event(payload)

    def _get(self, subscription_id: str) -> ProviderSubscriptionData:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise ProviderError(
                message=f"Unknown subscription {subscription_id}",
                provider_subscription_id=subscription_id,
            )
        return subscription


# ============================================================================
# Factory and retry policy
# ============================================================================


def get_billing_provider(config: Optional[Settings] = None) -> BillingProvider:
    """
    Build the provider selected by BILLING_PROVIDER.

    Raises:
        ValidationError: For unknown provider names, or "stripe" without a key
    """
    config = config or default_settings
    name = (config.BILLING_PROVIDER or "").lower()

    if name == "noop":
        logger.info("Using no-op billing provider")
        return NoOpBillingProvider(period_days=config.TRIAL_PERIOD_DAYS)
    if name == "stripe":
        if not config.stripe_enabled:
            raise ValidationError(
                message="BILLING_PROVIDER=stripe requires STRIPE_SECRET_KEY",
            )
        return StripeBillingProvider(
            api_key=config.STRIPE_SECRET_KEY,
            api_version=config.STRIPE_API_VERSION,
            timeout_seconds=config.PROVIDER_TIMEOUT_SECONDS,
        )
    raise ValidationError(
        message=f"Unknown billing provider: {config.BILLING_PROVIDER}",
        billing_provider=config.BILLING_PROVIDER,
    )


async def with_provider_retry(
    call: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    operation: str = "provider call",
) -> T:
    """
    Run a provider call, retrying ProviderError with exponential backoff.

    WHY: User-initiated writes (creating or changing a subscription) are
    worth a few retries on transient provider failures. Background sweeps
    do not use this, a failed item is simply retried on the next run.

    Args:
        call: Zero-argument coroutine function performing the provider call
        attempts: Total attempts, at least 1
        backoff_seconds: Delay before the second attempt, doubled each time
        operation: Name used in logs

    Raises:
        ProviderError: The last error once attempts are exhausted
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except ProviderError as e:
            if attempt == attempts:
                logger.error(
                    f"{operation} failed after {attempts} attempt(s): {e.message}",
                    extra={"operation": operation, "attempts": attempts},
                )
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                f"{operation} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s",
                extra={"operation": operation, "attempt": attempt},
            )
            await asyncio.sleep(delay)
    raise ProviderError(message=f"{operation} was not attempted")  # pragma: no cover


def new_idempotency_key() -> str:
    """Key that makes retried provider writes safe to repeat."""
    return uuid.uuid4().hex
