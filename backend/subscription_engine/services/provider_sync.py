"""
Mapping provider subscription state onto the local aggregate.

WHAT: Status translation, timed retrieval and the mutations that bring a
local Subscription in line with the provider's view of it.

WHY: Webhooks, user-initiated creation and the hourly sync all apply the
same provider fields. Keeping the rules in one place means a status or
period is interpreted identically whichever path saw it first.
"""

import asyncio
import logging
from typing import Any, Mapping, Optional

from subscription_engine.core.exceptions import ProviderTimeoutError, ValidationError
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.schemas.webhooks import ProviderSubscriptionData
from subscription_engine.services.billing_provider import BillingProvider

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(raw: Optional[str]) -> SubscriptionStatus:
    """
    Translate a provider status string.

    Unknown values map to INCOMPLETE, which grants no access, and are
    logged so new provider statuses get noticed.
    """
    status = PROVIDER_STATUS_MAP.get((raw or "").lower())
    if status is None:
        logger.warning(
            f"Unknown provider subscription status {raw!r}, treating as incomplete",
            extra={"provider_status": raw},
        )
        return SubscriptionStatus.INCOMPLETE
    return status


async def retrieve_with_timeout(
    provider: BillingProvider, provider_subscription_id: str, timeout_seconds: float
) -> ProviderSubscriptionData:
    """
    Fetch a provider subscription, bounded by timeout_seconds.

    Raises:
        ProviderTimeoutError: If the provider does not answer in time
        ProviderError: For any other provider failure
    """
    try:
        return await asyncio.wait_for(
            provider.retrieve_subscription(provider_subscription_id),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise ProviderTimeoutError(
            provider_subscription_id=provider_subscription_id,
            timeout_seconds=timeout_seconds,
        ) from e


def sync_from_provider(subscription: Subscription, remote: ProviderSubscriptionData) -> bool:
    """
    Apply the provider's status, period and cancel flag.

    Only fields that differ are mutated, so an unchanged provider view
    records no events.

    Returns:
        True if anything changed
    """
    changed = subscription.update_status(map_provider_status(remote.status))

    period = remote.billing_period()
    if period is not None and period != (
        subscription.current_period_start,
        subscription.current_period_end,
    ):
        subscription.update_period(*period)
        changed = True

    if not subscription.is_canceled:
        if remote.cancel_at_period_end and not subscription.cancel_at_period_end:
            subscription.cancel(at_period_end=True)
            changed = True
        elif subscription.cancel_at_period_end and not remote.cancel_at_period_end:
            subscription.reactivate()
            changed = True
    return changed


def convert_to_provider_subscription(
    subscription: Subscription,
    remote: ProviderSubscriptionData,
    plan_id: str,
    payment_provider: str,
    payment_method_id: Optional[str] = None,
    billing: Optional[Mapping[str, Any]] = None,
) -> None:
    """
    Turn a local trial, or an ended subscription, into the provider's new one.

    Raises:
        ValidationError: If a different provider subscription is still running
    """
    subscription.link_provider(remote.customer, remote.id, payment_provider)
    subscription.change_plan(plan_id)
    sync_from_provider(subscription, remote)
    if payment_method_id:
        subscription.update_payment_method(payment_method_id)
    if billing:
        subscription.update_billing_details(billing)


def create_from_provider(
    org_id: str,
    remote: ProviderSubscriptionData,
    plan_id: str,
    payment_provider: str,
    payment_method_id: Optional[str] = None,
    billing: Optional[Mapping[str, Any]] = None,
) -> Subscription:
    """
    New aggregate mirroring a provider subscription.

    Raises:
        ValidationError: If the provider subscription has no billing period
    """
    period = remote.billing_period()
    if period is None:
        raise ValidationError(
            message="Provider subscription has no billing period",
            provider_subscription_id=remote.id,
        )
    start, end = period
    return Subscription.create(
        org_id=org_id,
        plan_id=plan_id,
        status=map_provider_status(remote.status),
        current_period_start=start,
        current_period_end=end,
        trial_end=remote.trial_end,
        cancel_at_period_end=remote.cancel_at_period_end,
        payment_provider=payment_provider,
        customer_id=remote.customer,
        provider_subscription_id=remote.id,
        payment_method_id=payment_method_id,
        billing=billing,
    )
