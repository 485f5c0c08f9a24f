"""
Subscription aggregate for one organization's plan, billing state and usage.

WHY: The subscription is the consistency boundary for entitlement:
1. Organizations subscribe to a plan from the catalog
2. Status and billing period mirror the billing provider
3. Usage counters are a point-in-time cache checked against plan limits
4. Every change is recorded as a domain event for consumers and history

INVARIANTS (checked by every mutation):
- org_id and plan_id are always set
- current_period_start < current_period_end
- status only changes through the methods below
- every mutation stamps updated_at and buffers exactly one DomainEvent,
  which the caller drains with flush_events() and publishes

ARCHITECTURE:
- One subscription per organization (unique org_id)
- Mutations are synchronous and do no I/O, persistence and provider
  calls live in the service layer
- version column gives optimistic concurrency on save
"""

import enum
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    ForeignKey,
    DateTime,
    Boolean,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import reconstructor

from subscription_engine.core.exceptions import InvalidPeriodError, ValidationError
from subscription_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin
from subscription_engine.models.events import DomainEvent, SubscriptionEventKind
from subscription_engine.models.plan import UsageMetric


SECONDS_PER_DAY = 86400


class SubscriptionStatus(str, enum.Enum):
    """
    Internal subscription status values.

    Statuses:
    - TRIALING: Free trial period, grants access
    - ACTIVE: Payment successful, grants access
    - PAST_DUE: Payment failed, provider is retrying
    - CANCELED: Ended, either immediately or at period end
    - UNPAID: Retries exhausted, access revoked
    - INCOMPLETE: Initial payment pending

    NOTE: The provider's incomplete_expired status maps to CANCELED,
    there is no separate internal value for it.
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"


ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

_BILLING_COLUMNS = {
    "email": "billing_email",
    "name": "billing_name",
    "address": "billing_address",
    "vat_number": "vat_number",
}
BILLING_FIELDS = tuple(_BILLING_COLUMNS)

_USAGE_COLUMNS = {
    UsageMetric.TEAM_MEMBERS: "usage_team_members",
    UsageMetric.MEDIA_STORAGE: "usage_media_storage",
    UsageMetric.CUSTOM_DASHBOARDS: "usage_custom_dashboards",
    UsageMetric.API_REQUESTS: "usage_api_requests",
}


def usage_column_for(metric: UsageMetric) -> Optional[str]:
    """Name of the usage column that caches a metric, None if not tracked."""
    return _USAGE_COLUMNS.get(metric)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription aggregate root.

    RELATIONS:
    - One per organization (org_id is an external identifier)
    - References a SubscriptionPlan by plan_id
    - Linked to the billing provider via provider_subscription_id,
      which stays empty until the provider confirms creation

    LIFECYCLE:
    1. create_trial_subscription() or webhook-driven Subscription.create()
    2. Webhooks and scheduler jobs reconcile status and period
    3. Users change plan, cancel, update billing details
    4. Normally retained as CANCELED for history, deleted only explicitly
    """

    __tablename__ = "subscriptions"

    org_id = Column(String(64), nullable=False, unique=True, index=True)
    plan_id = Column(
        String(50),
        ForeignKey("subscription_plans.id"),
        nullable=False,
        index=True,
    )

    # Lifecycle
    status = Column(
        Enum(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE,
        index=True,
    )
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    trial_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # Provider linkage
    payment_provider = Column(String(50), nullable=False, default="stripe")
    customer_id = Column(String(255), nullable=True, index=True)
    provider_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        doc="Provider subscription ID (sub_xxx)",
    )
    payment_method_id = Column(String(255), nullable=True)

    # Billing profile
    billing_email = Column(String(255), nullable=True)
    billing_name = Column(String(255), nullable=True)
    billing_address = Column(JSON, nullable=True)
    vat_number = Column(String(50), nullable=True)

    # Usage snapshot (a cache, not a ledger)
    usage_team_members = Column(Integer, nullable=False, default=0)
    usage_media_storage = Column(Integer, nullable=False, default=0)
    usage_custom_dashboards = Column(Integer, nullable=False, default=0)
    usage_api_requests = Column(Integer, nullable=False, default=0)
    usage_last_updated = Column(DateTime, nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("org_id", name="uq_subscription_org"),
    )
    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._pending_events: List[DomainEvent] = []

    @reconstructor
    def _init_on_load(self) -> None:
        """Give instances loaded from the database an empty event buffer."""
        self._pending_events = []

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, org_id={self.org_id}, "
            f"plan_id={self.plan_id}, status={self.status.value})>"
        )

    # ========================================================================
    # Factories
    # ========================================================================

    @classmethod
    def create(
        cls,
        *,
        org_id: str,
        plan_id: str,
        status: SubscriptionStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        trial_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        payment_provider: str = "stripe",
        customer_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        billing: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "Subscription":
        """
        Create a new subscription and buffer SubscriptionCreated.

        Raises:
            ValidationError: If org_id or plan_id is missing
            InvalidPeriodError: If the period start is not before its end
        """
        if not org_id:
            raise ValidationError(message="organization id is required")
        if not plan_id:
            raise ValidationError(message="plan id is required", org_id=org_id)
        _check_period(current_period_start, current_period_end)

        now = now or datetime.utcnow()
        billing = dict(billing or {})
        _check_billing_fields(billing)

        subscription = cls(
            org_id=org_id,
            plan_id=plan_id,
            status=status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            trial_end=trial_end,
            cancel_at_period_end=cancel_at_period_end,
            payment_provider=payment_provider,
            customer_id=customer_id,
            provider_subscription_id=provider_subscription_id,
            payment_method_id=payment_method_id,
            billing_email=billing.get("email"),
            billing_name=billing.get("name"),
            billing_address=billing.get("address"),
            vat_number=billing.get("vat_number"),
            usage_team_members=0,
            usage_media_storage=0,
            usage_custom_dashboards=0,
            usage_api_requests=0,
            usage_last_updated=now,
            created_at=now,
            updated_at=now,
        )
        subscription._record(
            SubscriptionEventKind.CREATED,
            {"plan_id": plan_id, "status": status, "provider_subscription_id": provider_subscription_id},
            now=now,
        )
        return subscription

    # ========================================================================
    # Mutations
    # ========================================================================

    def update_status(self, new_status: SubscriptionStatus) -> bool:
        """
        Move to a new status.

        Returns:
            True if the status changed, False if it was already new_status
        """
        new_status = SubscriptionStatus(new_status)
        if new_status == self.status:
            return False

        old_status = self.status
        self.status = new_status
        if new_status == SubscriptionStatus.CANCELED and self.canceled_at is None:
            self.canceled_at = datetime.utcnow()
        self._record(
            SubscriptionEventKind.STATUS_CHANGED,
            {"old_status": old_status, "new_status": new_status},
        )
        return True

    def update_period(self, start: datetime, end: datetime) -> None:
        """
        Replace the current billing period.

        Raises:
            InvalidPeriodError: If start >= end (state is left unchanged)
        """
        _check_period(start, end, subscription_id=self.id)
        self.current_period_start = start
        self.current_period_end = end
        self._record(
            SubscriptionEventKind.PERIOD_UPDATED,
            {"current_period_start": start, "current_period_end": end},
        )

    def cancel(self, at_period_end: bool = True) -> None:
        """
        Cancel the subscription.

        WHAT: at_period_end=True keeps the current status and access until
        the period ends. at_period_end=False ends the subscription now.
        Either way a single Cancelled event is buffered.
        """
        previous_status = self.status
        now = datetime.utcnow()
        self.cancel_at_period_end = at_period_end
        self.canceled_at = now
        if not at_period_end:
            self.status = SubscriptionStatus.CANCELED
        self._record(
            SubscriptionEventKind.CANCELLED,
            {"at_period_end": at_period_end, "previous_status": previous_status},
            now=now,
        )

    def reactivate(self) -> None:
        """
        Undo a pending cancellation at period end.

        Raises:
            ValidationError: If no cancellation is pending or the
                subscription has already ended
        """
        if self.status == SubscriptionStatus.CANCELED:
            raise ValidationError(
                message="Canceled subscriptions cannot be reactivated",
                subscription_id=self.id,
            )
        if not self.cancel_at_period_end:
            raise ValidationError(
                message="Subscription is not scheduled for cancellation",
                subscription_id=self.id,
            )
        self.cancel_at_period_end = False
        self.canceled_at = None
        self._record(SubscriptionEventKind.REACTIVATED, {"status": self.status})

    def change_plan(self, new_plan_id: str) -> bool:
        """
        Switch to another plan.

        Returns:
            True if the plan changed, False if already on new_plan_id
        """
        if not new_plan_id:
            raise ValidationError(message="plan id is required", subscription_id=self.id)
        if new_plan_id == self.plan_id:
            return False

        old_plan_id = self.plan_id
        self.plan_id = new_plan_id
        self._record(
            SubscriptionEventKind.PLAN_CHANGED,
            {"old_plan_id": old_plan_id, "new_plan_id": new_plan_id},
        )
        return True

    def update_usage(self, partial: Mapping[Union[UsageMetric, str], int]) -> None:
        """
        Merge new counts into the usage snapshot.

        Values are final counts, not deltas.

        Raises:
            ValidationError: For unknown or untracked metrics, or negative counts
        """
        updates: Dict[str, int] = {}
        for key, value in partial.items():
            metric = key if isinstance(key, UsageMetric) else UsageMetric.from_name(key)
            column = usage_column_for(metric)
            if column is None:
                raise ValidationError(
                    message=f"Usage for {metric.value} is not tracked",
                    metric=metric.value,
                )
            if value is None or int(value) < 0:
                raise ValidationError(
                    message=f"Usage for {metric.value} must be a non-negative count",
                    metric=metric.value,
                )
            updates[column] = int(value)

        now = datetime.utcnow()
        for column, value in updates.items():
            setattr(self, column, value)
        self.usage_last_updated = now
        self._record(
            SubscriptionEventKind.USAGE_UPDATED,
            {"usage": self._usage_counts()},
            now=now,
        )

    def update_payment_method(self, payment_method_id: str) -> None:
        """Record the provider payment method used for future invoices."""
        if not payment_method_id:
            raise ValidationError(
                message="payment method id is required", subscription_id=self.id
            )
        self.payment_method_id = payment_method_id
        self._record(
            SubscriptionEventKind.PAYMENT_METHOD_UPDATED,
            {"payment_method_id": payment_method_id},
        )

    def link_provider(
        self,
        customer_id: str,
        provider_subscription_id: str,
        payment_provider: Optional[str] = None,
    ) -> None:
        """
        Attach the provider's customer and subscription ids.

        WHAT: Used when a local trial converts to a paid subscription
        confirmed by the provider.

        Raises:
            ValidationError: If either id is missing, or a different
                provider subscription is linked and still running
        """
        if not customer_id or not provider_subscription_id:
            raise ValidationError(
                message="customer id and provider subscription id are required",
                subscription_id=self.id,
            )
        if (
            self.provider_subscription_id
            and self.provider_subscription_id != provider_subscription_id
            and not self.is_canceled
        ):
            raise ValidationError(
                message="Subscription is already linked to another provider subscription",
                subscription_id=self.id,
            )
        self.customer_id = customer_id
        self.provider_subscription_id = provider_subscription_id
        if payment_provider:
            self.payment_provider = payment_provider
        self._record(
            SubscriptionEventKind.PROVIDER_LINKED,
            {
                "payment_provider": self.payment_provider,
                "customer_id": customer_id,
                "provider_subscription_id": provider_subscription_id,
            },
        )

    def update_billing_details(self, partial: Mapping[str, Any]) -> None:
        """
        Merge fields into the billing profile.

        Raises:
            ValidationError: For fields outside email, name, address, vat_number
        """
        partial = dict(partial)
        _check_billing_fields(partial)
        for key, value in partial.items():
            setattr(self, _BILLING_COLUMNS[key], value)
        # Only field names go on the bus, billing data stays in the row
        self._record(
            SubscriptionEventKind.BILLING_UPDATED,
            {"fields": sorted(partial)},
        )

    def flush_events(self) -> List[DomainEvent]:
        """
        Drain the pending event buffer.

        Returns:
            Events buffered since the last flush, oldest first. A second
            call without new mutations returns an empty list.
        """
        events = self._pending_events
        self._pending_events = []
        for event in events:
            if event.subscription_id is None:
                event.subscription_id = self.id
        return events

    # ========================================================================
    # Queries
    # ========================================================================

    @property
    def is_active(self) -> bool:
        """Active and trialing subscriptions grant plan entitlements."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_canceled(self) -> bool:
        """Check if the subscription has ended."""
        return self.status == SubscriptionStatus.CANCELED

    @property
    def is_pending_cancellation(self) -> bool:
        """Check if the subscription ends when the current period ends."""
        return bool(self.cancel_at_period_end) and not self.is_canceled

    def days_until_renewal(self, now: Optional[datetime] = None) -> int:
        """
        Whole days until the current period ends, rounded up.

        Returns:
            Days remaining, negative if the period end has passed
        """
        return _ceil_days(self.current_period_end - (now or datetime.utcnow()))

    def is_in_trial(self, now: Optional[datetime] = None) -> bool:
        """Check if the subscription is trialing with trial time left."""
        return (
            self.status == SubscriptionStatus.TRIALING
            and self.trial_end is not None
            and self.trial_end > (now or datetime.utcnow())
        )

    def days_left_in_trial(self, now: Optional[datetime] = None) -> int:
        """Whole days of trial left, rounded up, 0 when not in trial."""
        now = now or datetime.utcnow()
        if not self.is_in_trial(now):
            return 0
        return _ceil_days(self.trial_end - now)

    def current_usage(self, metric: UsageMetric) -> int:
        """Cached usage for a metric, 0 for metrics that are not tracked."""
        column = usage_column_for(metric)
        if column is None:
            return 0
        return getattr(self, column) or 0

    @property
    def usage(self) -> Dict[str, Any]:
        """Usage group as exposed by the API."""
        return {**self._usage_counts(), "last_updated": self.usage_last_updated}

    @property
    def payment(self) -> Dict[str, Any]:
        """Provider linkage group as exposed by the API."""
        return {
            "provider": self.payment_provider,
            "customer_id": self.customer_id,
            "subscription_id": self.provider_subscription_id,
            "payment_method_id": self.payment_method_id,
        }

    @property
    def billing(self) -> Dict[str, Any]:
        """Billing profile group as exposed by the API."""
        return {
            "email": self.billing_email,
            "name": self.billing_name,
            "address": self.billing_address,
            "vat_number": self.vat_number,
        }

    # ========================================================================
    # Internals
    # ========================================================================

    def _usage_counts(self) -> Dict[str, int]:
        return {
            metric.value: getattr(self, column) or 0
            for metric, column in _USAGE_COLUMNS.items()
        }

    def _record(
        self,
        kind: SubscriptionEventKind,
        data: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.utcnow()
        self.updated_at = now
        self._pending_events.append(
            DomainEvent(
                kind=kind,
                org_id=self.org_id,
                subscription_id=self.id,
                data=data,
                occurred_at=now,
            )
        )


def create_trial_subscription(
    org_id: str,
    plan_id: str,
    billing: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
    trial_days: int = 14,
    period_days: int = 30,
    payment_provider: str = "stripe",
) -> Subscription:
    """
    Start a trial for an organization.

    WHAT: status=trialing, trial ends after trial_days, first
    billing period lasts period_days.

    Returns:
        New Subscription with SubscriptionCreated buffered
    """
    now = now or datetime.utcnow()
    return Subscription.create(
        org_id=org_id,
        plan_id=plan_id,
        status=SubscriptionStatus.TRIALING,
        current_period_start=now,
        current_period_end=now + timedelta(days=period_days),
        trial_end=now + timedelta(days=trial_days),
        payment_provider=payment_provider,
        billing=billing,
        now=now,
    )


def _check_period(start: datetime, end: datetime, **context: Any) -> None:
    if start is None or end is None or start >= end:
        raise InvalidPeriodError(
            start=start.isoformat() if start else None,
            end=end.isoformat() if end else None,
            **context,
        )


def _check_billing_fields(fields: Iterable[str]) -> None:
    unknown = sorted(set(fields) - set(BILLING_FIELDS))
    if unknown:
        raise ValidationError(
            message=f"Unknown billing fields: {', '.join(unknown)}",
            fields=unknown,
        )
