"""
Entitlement evaluation service.

WHAT: Decides whether an organization may use a feature or consume more
of a metered resource, and records usage.

WHY: Every gated action in the product calls these checks. They have to
be cheap, side-effect free and safe:
1. Organizations without an active subscription keep the basic features
2. Denials always explain themselves
3. Any internal error denies access (fail closed), it never grants it

HOW: Each check opens a short read-only session through the repository
port. Usage writes go through the aggregate (update_usage, with history
and an event) except the API request counter, which uses an atomic
increment because it is hit on every API call.
"""

import logging
from typing import Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from subscription_engine.core.config import Settings, settings as default_settings
from subscription_engine.core.exceptions import SubscriptionNotFoundError, ValidationError
from subscription_engine.db.session import session_scope
from subscription_engine.models.plan import PlanTier, SubscriptionPlan, UsageMetric, UNLIMITED
from subscription_engine.models.subscription import Subscription
from subscription_engine.schemas.entitlement import (
    EntitlementSummary,
    ExceededLimit,
    FeatureAccessResult,
    UsageLimitResult,
)
from subscription_engine.services.concurrency import SubscriptionLocks, run_serialized
from subscription_engine.services.event_bus import EventBus
from subscription_engine.services.plan_catalog import BASIC_FEATURE_IDS, DEFAULT_PLANS
from subscription_engine.services.repository import SqlSubscriptionRepository

logger = logging.getLogger(__name__)

CHECK_FAILED_REASON = "Entitlement check failed"
NO_SUBSCRIPTION_REASON = "No active subscription"
PLAN_NOT_FOUND_REASON = "Subscription plan not found"

# Limits used when neither a plan nor the basic catalog entry can be read
BASIC_LIMITS: Dict[str, int] = dict(DEFAULT_PLANS[0]["limits"])


class EntitlementService:
    """
    Feature and usage-limit checks for organizations.

    Attributes:
        session_factory: Factory for per-check sessions
        event_bus: Bus for UsageUpdated events
        locks: Shared per-subscription write locks
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_bus: EventBus,
        locks: Optional[SubscriptionLocks] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.locks = locks or SubscriptionLocks()
        self.config = config or default_settings

    # ========================================================================
    # Checks
    # ========================================================================

    async def check_feature_access(self, org_id: str, feature_id: str) -> FeatureAccessResult:
        """
        Check whether an organization may use a feature.

        WHAT:
        - no subscription, or an inactive one: basic-tier features only
        - active or trialing: the plan's enabled features

        Returns:
            FeatureAccessResult, with a reason whenever allowed is False
        """
        try:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_organization_id(org_id)

                if subscription is None or not subscription.is_active:
                    if feature_id in await self._basic_features(repo):
                        return FeatureAccessResult(allowed=True, feature_id=feature_id)
                    reason = (
                        NO_SUBSCRIPTION_REASON
                        if subscription is None
                        else f"Subscription is not active ({subscription.status.value})"
                    )
                    return FeatureAccessResult(allowed=False, feature_id=feature_id, reason=reason)

                plan = await repo.get_subscription_plan_by_id(subscription.plan_id)
                if plan is None:
                    logger.error(
                        f"Plan {subscription.plan_id} of org {org_id} is missing from the catalog",
                        extra={"org_id": org_id, "plan_id": subscription.plan_id},
                    )
                    return FeatureAccessResult(
                        allowed=False, feature_id=feature_id, reason=PLAN_NOT_FOUND_REASON
                    )

                if not plan.has_feature(feature_id):
                    return FeatureAccessResult(
                        allowed=False,
                        feature_id=feature_id,
                        reason=f"Feature {feature_id} is not available in {plan.display_name} plan",
                    )
                return FeatureAccessResult(allowed=True, feature_id=feature_id)

        except Exception as e:
            logger.error(
                f"Feature access check failed for org {org_id}: {e}",
                extra={"org_id": org_id, "feature_id": feature_id},
                exc_info=True,
            )
            return FeatureAccessResult(
                allowed=False, feature_id=feature_id, reason=CHECK_FAILED_REASON
            )

    async def check_usage_limit(
        self,
        org_id: str,
        metric: Union[UsageMetric, str],
        requested_amount: int,
    ) -> UsageLimitResult:
        """
        Check whether an organization may reach requested_amount of a metric.

        WHAT:
        - no active subscription: denied
        - plan sets no limit for the metric: allowed (unbounded)
        - limit is -1: allowed (unlimited)
        - otherwise: allowed when requested_amount <= limit

        Returns:
            UsageLimitResult reporting limit and current usage whenever
            the plan is known, denied or not
        """
        metric_name = metric.value if isinstance(metric, UsageMetric) else str(metric)
        try:
            metric = _resolve_metric(metric)
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_organization_id(org_id)

                if subscription is None:
                    return UsageLimitResult(
                        allowed=False,
                        metric=metric.value,
                        requested_amount=requested_amount,
                        reason=NO_SUBSCRIPTION_REASON,
                    )
                current_usage = subscription.current_usage(metric)
                plan = await repo.get_subscription_plan_by_id(subscription.plan_id)
                if not subscription.is_active:
                    return UsageLimitResult(
                        allowed=False,
                        metric=metric.value,
                        requested_amount=requested_amount,
                        limit=plan.get_limit(metric) if plan is not None else None,
                        current_usage=current_usage,
                        reason=f"Subscription is not active ({subscription.status.value})",
                    )

                if plan is None:
                    return UsageLimitResult(
                        allowed=False,
                        metric=metric.value,
                        requested_amount=requested_amount,
                        current_usage=current_usage,
                        reason=PLAN_NOT_FOUND_REASON,
                    )

                limit = plan.get_limit(metric)
                if limit is None or limit == UNLIMITED or requested_amount <= limit:
                    return UsageLimitResult(
                        allowed=True,
                        metric=metric.value,
                        requested_amount=requested_amount,
                        limit=limit,
                        current_usage=current_usage,
                    )
                return UsageLimitResult(
                    allowed=False,
                    metric=metric.value,
                    requested_amount=requested_amount,
                    limit=limit,
                    current_usage=current_usage,
                    reason=(
                        f"Requested usage ({requested_amount}) exceeds the limit "
                        f"({limit}) for {metric.value}"
                    ),
                )

        except Exception as e:
            logger.error(
                f"Usage limit check failed for org {org_id}: {e}",
                extra={"org_id": org_id, "metric": metric_name},
                exc_info=True,
            )
            return UsageLimitResult(
                allowed=False,
                metric=metric_name,
                requested_amount=requested_amount,
                reason=CHECK_FAILED_REASON,
            )

    # ========================================================================
    # Usage writes
    # ========================================================================

    async def update_usage(
        self, org_id: str, metric: Union[UsageMetric, str], value: int
    ) -> Subscription:
        """
        Set a usage counter to a final count.

        WHAT: Not additive, callers pass the new total. Goes through the
        aggregate, so the change is versioned, logged to history and
        published as UsageUpdated.

        Raises:
            SubscriptionNotFoundError: If the organization has no subscription
            ValidationError: For unknown or untracked metrics, negative values
        """
        metric = _resolve_metric(metric)

        async def attempt() -> Subscription:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_organization_id(org_id)
                if subscription is None:
                    raise SubscriptionNotFoundError(org_id=org_id)
                subscription.update_usage({metric: value})
                events = await repo.save_subscription(subscription)
            await self.event_bus.publish_events(events)
            return subscription

        return await run_serialized(
            self.locks, org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    async def increment_api_requests(self, org_id: str, delta: int = 1) -> int:
        """
        Atomically add to the API request counter.

        WHY: Called on every API request, so it must not lose increments
        under concurrency. A single UPDATE ... SET col = col + delta does
        that without a lock or a version check.

        Returns:
            The counter value after the increment

        Raises:
            SubscriptionNotFoundError: If the organization has no subscription
            ValidationError: If delta is not positive
        """
        if delta <= 0:
            raise ValidationError(message="delta must be positive", delta=delta)
        async with session_scope(self.session_factory) as session:
            repo = SqlSubscriptionRepository(session)
            subscription = await repo.get_subscription_by_organization_id(org_id)
            if subscription is None:
                raise SubscriptionNotFoundError(org_id=org_id)
            return await repo.increment_subscription_usage(
                subscription.id, UsageMetric.API_REQUESTS, delta
            )

    # ========================================================================
    # Summaries
    # ========================================================================

    async def get_available_features(self, org_id: str) -> List[str]:
        """Enabled feature ids, basic features when not actively subscribed."""
        try:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                plan = await self._active_plan(repo, org_id)
                if plan is None:
                    return await self._basic_features(repo)
                return plan.feature_ids()
        except Exception as e:
            logger.error(
                f"Failed to list features for org {org_id}: {e}",
                extra={"org_id": org_id},
                exc_info=True,
            )
            return list(BASIC_FEATURE_IDS)

    async def get_subscription_limits(self, org_id: str) -> Dict[str, int]:
        """Plan limits, basic limits when not actively subscribed."""
        try:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                plan = await self._active_plan(repo, org_id)
                if plan is None:
                    return await self._basic_limits(repo)
                return dict(plan.limits or {})
        except Exception as e:
            logger.error(
                f"Failed to list limits for org {org_id}: {e}",
                extra={"org_id": org_id},
                exc_info=True,
            )
            return dict(BASIC_LIMITS)

    async def check_exceeded_limits(self, org_id: str) -> List[ExceededLimit]:
        """
        Metrics whose cached usage is above the plan limit.

        WHY: After a downgrade an organization can be over its new limits.
        Clients show a warning, the engine does not delete anything.
        """
        async with session_scope(self.session_factory) as session:
            repo = SqlSubscriptionRepository(session)
            subscription = await repo.get_subscription_by_organization_id(org_id)
            if subscription is None:
                return []
            plan = await self._active_plan(repo, org_id, subscription)
            limits = dict(plan.limits or {}) if plan else await self._basic_limits(repo)
            return _exceeded(subscription, limits)

    async def get_summary(self, org_id: str) -> EntitlementSummary:
        """Features, limits, usage and exceeded limits in one response."""
        async with session_scope(self.session_factory) as session:
            repo = SqlSubscriptionRepository(session)
            subscription = await repo.get_subscription_by_organization_id(org_id)
            plan = await self._active_plan(repo, org_id, subscription)
            if plan is None:
                features = await self._basic_features(repo)
                limits = await self._basic_limits(repo)
            else:
                features = plan.feature_ids()
                limits = dict(plan.limits or {})

        if subscription is None:
            return EntitlementSummary(org_id=org_id, features=features, limits=limits)

        usage = {
            key: value for key, value in subscription.usage.items() if key != "last_updated"
        }
        return EntitlementSummary(
            org_id=org_id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            is_active=subscription.is_active,
            features=features,
            limits=limits,
            usage=usage,
            exceeded=_exceeded(subscription, limits),
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _active_plan(
        self,
        repo: SqlSubscriptionRepository,
        org_id: str,
        subscription: Optional[Subscription] = None,
    ) -> Optional[SubscriptionPlan]:
        if subscription is None:
            subscription = await repo.get_subscription_by_organization_id(org_id)
        if subscription is None or not subscription.is_active:
            return None
        return await repo.get_subscription_plan_by_id(subscription.plan_id)

    async def _basic_plan(self, repo: SqlSubscriptionRepository) -> Optional[SubscriptionPlan]:
        for plan in await repo.get_all_subscription_plans():
            if plan.tier == PlanTier.BASIC:
                return plan
        return None

    async def _basic_features(self, repo: SqlSubscriptionRepository) -> List[str]:
        """Features tagged with the basic tier, from the catalog when possible."""
        plan = await self._basic_plan(repo)
        features = plan.basic_feature_ids() if plan else []
        return features or list(BASIC_FEATURE_IDS)

    async def _basic_limits(self, repo: SqlSubscriptionRepository) -> Dict[str, int]:
        plan = await self._basic_plan(repo)
        if plan is not None and plan.limits:
            return dict(plan.limits)
        return dict(BASIC_LIMITS)


def _resolve_metric(metric: Union[UsageMetric, str]) -> UsageMetric:
    if isinstance(metric, UsageMetric):
        return metric
    try:
        return UsageMetric.from_name(metric)
    except ValueError as e:
        raise ValidationError(message=f"Unknown usage metric: {metric}", metric=metric) from e


def _exceeded(subscription: Subscription, limits: Dict[str, int]) -> List[ExceededLimit]:
    exceeded = []
    for key, limit in limits.items():
        try:
            metric = UsageMetric(key)
        except ValueError:
            continue
        if limit is None or limit == UNLIMITED:
            continue
        current = subscription.current_usage(metric)
        if current > limit:
            exceeded.append(ExceededLimit(metric=key, limit=limit, current_usage=current))
    return exceeded
