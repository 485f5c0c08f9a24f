"""
Subscription domain events.

WHAT: The closed set of event kinds the engine publishes, and the
event record buffered by the Subscription aggregate.

WHY: Consumers (organization and team domains, statistics) subscribe
by event name. A single enum keeps names consistent between the
aggregate, the webhook reconciler and the scheduler jobs, and lets
dispatch tables be checked for completeness.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class SubscriptionEventKind(str, enum.Enum):
    """
    Every event name published on the event bus.

    Aggregate events (buffered by Subscription mutations):
    - CREATED, STATUS_CHANGED, PLAN_CHANGED, CANCELLED, PERIOD_UPDATED,
      USAGE_UPDATED, PAYMENT_METHOD_UPDATED, BILLING_UPDATED, REACTIVATED,
      PROVIDER_LINKED

    Reconciliation events (published by the webhook reconciler):
    - PAYMENT_SUCCEEDED, PAYMENT_FAILED, UPDATED, CANCELED

    Scheduler events (published by the periodic jobs):
    - RENEWAL_REMINDER, EXPIRY_REMINDER, EXPIRED, PAYMENT_REMINDER,
      STATISTICS_UPDATED
    """

    CREATED = "subscription.created"
    STATUS_CHANGED = "subscription.status_changed"
    PLAN_CHANGED = "subscription.plan_changed"
    CANCELLED = "subscription.cancelled"
    PERIOD_UPDATED = "subscription.period_updated"
    USAGE_UPDATED = "subscription.usage_updated"
    PAYMENT_METHOD_UPDATED = "subscription.payment_method_updated"
    BILLING_UPDATED = "subscription.billing_updated"
    REACTIVATED = "subscription.reactivated"
    PROVIDER_LINKED = "subscription.provider_linked"

    PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
    PAYMENT_FAILED = "subscription.payment_failed"
    UPDATED = "subscription.updated"
    CANCELED = "subscription.canceled"

    RENEWAL_REMINDER = "subscription.renewal_reminder"
    EXPIRY_REMINDER = "subscription.expiry_reminder"
    EXPIRED = "subscription.expired"
    PAYMENT_REMINDER = "subscription.payment_reminder"
    STATISTICS_UPDATED = "subscription.statistics_updated"

    @property
    def history_type(self) -> str:
        """Short name stored in subscription history (e.g. "status_changed")."""
        return self.value.split(".", 1)[1]


@dataclass
class DomainEvent:
    """
    A single event emitted by a subscription mutation or service.

    Fields:
    - kind: Which event occurred
    - subscription_id: Local subscription id (None before first save)
    - org_id: Owning organization
    - data: Event-specific payload
    - occurred_at: When the mutation happened
    """

    kind: SubscriptionEventKind
    org_id: str
    subscription_id: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def name(self) -> str:
        """Event name as published on the bus."""
        return self.kind.value

    def to_payload(self) -> Dict[str, Any]:
        """
        Serialize for the event bus and history log.

        Datetimes are rendered as ISO 8601 strings so the payload is
        JSON-safe for both consumers and the history table.
        """
        return {
            "subscription_id": self.subscription_id,
            "organization_id": self.org_id,
            "occurred_at": self.occurred_at.isoformat(),
            **{k: json_safe(v) for k, v in self.data.items()},
        }


def json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
