"""
Subscription statistics for the weekly snapshot.

WHAT: Counts subscriptions by tier and status, computes monthly recurring
revenue and summarizes the last week's history into activity counters.

HOW: History entries are dispatched on their event kind through
ACTIVITY_HANDLERS, which must cover every SubscriptionEventKind. The
table is checked when this module is imported, so adding an event kind
without deciding how it is counted fails at startup, not silently.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from subscription_engine.models.events import SubscriptionEventKind
from subscription_engine.models.history import SubscriptionHistory
from subscription_engine.models.plan import PlanTier, SubscriptionPlan
from subscription_engine.models.subscription import Subscription, SubscriptionStatus

ActivityHandler = Callable[[Dict[str, int], Mapping[str, Any], Mapping[str, PlanTier]], None]

ACTIVITY_BUCKETS = (
    "new_subscriptions",
    "status_changes",
    "plan_changes",
    "upgrades",
    "downgrades",
    "cancellations",
    "provider_cancellations",
    "reactivations",
    "period_renewals",
    "trial_conversions",
    "payment_method_updates",
    "payments_succeeded",
    "payments_failed",
    "reminders_sent",
    "expirations",
    "unknown",
)


def _count(bucket: str) -> ActivityHandler:
    def handler(activity: Dict[str, int], data: Mapping[str, Any], plan_tiers: Mapping[str, PlanTier]) -> None:
        activity[bucket] += 1

    return handler


def _ignore(activity: Dict[str, int], data: Mapping[str, Any], plan_tiers: Mapping[str, PlanTier]) -> None:
    return None


def _plan_changed(activity: Dict[str, int], data: Mapping[str, Any], plan_tiers: Mapping[str, PlanTier]) -> None:
    activity["plan_changes"] += 1
    old_tier = plan_tiers.get(data.get("old_plan_id"))
    new_tier = plan_tiers.get(data.get("new_plan_id"))
    if old_tier is None or new_tier is None:
        return
    if new_tier.rank > old_tier.rank:
        activity["upgrades"] += 1
    elif new_tier.rank < old_tier.rank:
        activity["downgrades"] += 1


ACTIVITY_HANDLERS: Dict[SubscriptionEventKind, ActivityHandler] = {
    SubscriptionEventKind.CREATED: _count("new_subscriptions"),
    SubscriptionEventKind.STATUS_CHANGED: _count("status_changes"),
    SubscriptionEventKind.PLAN_CHANGED: _plan_changed,
    SubscriptionEventKind.CANCELLED: _count("cancellations"),
    SubscriptionEventKind.PERIOD_UPDATED: _count("period_renewals"),
    SubscriptionEventKind.USAGE_UPDATED: _ignore,
    SubscriptionEventKind.PAYMENT_METHOD_UPDATED: _count("payment_method_updates"),
    SubscriptionEventKind.BILLING_UPDATED: _ignore,
    SubscriptionEventKind.REACTIVATED: _count("reactivations"),
    SubscriptionEventKind.PROVIDER_LINKED: _count("trial_conversions"),
    SubscriptionEventKind.PAYMENT_SUCCEEDED: _count("payments_succeeded"),
    SubscriptionEventKind.PAYMENT_FAILED: _count("payments_failed"),
    SubscriptionEventKind.UPDATED: _ignore,
    SubscriptionEventKind.CANCELED: _count("provider_cancellations"),
    SubscriptionEventKind.RENEWAL_REMINDER: _count("reminders_sent"),
    SubscriptionEventKind.EXPIRY_REMINDER: _count("reminders_sent"),
    SubscriptionEventKind.EXPIRED: _count("expirations"),
    SubscriptionEventKind.PAYMENT_REMINDER: _count("reminders_sent"),
    SubscriptionEventKind.STATISTICS_UPDATED: _ignore,
}


def check_activity_handlers(handlers: Mapping[SubscriptionEventKind, ActivityHandler]) -> None:
    """
    Raises:
        RuntimeError: If any event kind has no activity handler
    """
    missing = set(SubscriptionEventKind) - set(handlers)
    if missing:
        raise RuntimeError(
            "No activity handler for event kinds: "
            + ", ".join(sorted(kind.value for kind in missing))
        )


check_activity_handlers(ACTIVITY_HANDLERS)

_KINDS_BY_HISTORY_TYPE = {kind.history_type: kind for kind in SubscriptionEventKind}


def summarize_activity(
    entries: Iterable[SubscriptionHistory],
    plan_tiers: Mapping[str, PlanTier],
) -> Dict[str, int]:
    """Count history entries into ACTIVITY_BUCKETS."""
    activity = {bucket: 0 for bucket in ACTIVITY_BUCKETS}
    for entry in entries:
        kind = _KINDS_BY_HISTORY_TYPE.get(entry.event_type)
        if kind is None:
            activity["unknown"] += 1
            continue
        ACTIVITY_HANDLERS[kind](activity, entry.event_data or {}, plan_tiers)
    return activity


def monthly_recurring_revenue(
    subscriptions: Iterable[Subscription],
    plans: Mapping[str, SubscriptionPlan],
) -> float:
    """
    Sum of monthly plan prices over paying subscriptions.

    NOTE: Only ACTIVE subscriptions count, trials have not paid yet and
    past_due ones may never pay.
    """
    total = 0.0
    for subscription in subscriptions:
        if subscription.status != SubscriptionStatus.ACTIVE:
            continue
        plan = plans.get(subscription.plan_id)
        if plan is not None:
            total += float(plan.price_monthly or 0)
    return round(total, 2)


def build_statistics(
    counts: Mapping[Tuple[str, str], int],
    plans: List[SubscriptionPlan],
    active_subscriptions: List[Subscription],
    history: Iterable[SubscriptionHistory],
    currency: str,
    now: datetime,
    window_days: int = 7,
) -> Dict[str, Any]:
    """
    Assemble the JSON-safe statistics snapshot.

    Args:
        counts: {(tier, status): count} over all subscriptions
        plans: The plan catalog
        active_subscriptions: Subscriptions with status active
        history: History entries from the activity window
        currency: Currency of plan prices
        now: Capture time
        window_days: Length of the activity window
    """
    by_tier: Dict[str, Dict[str, int]] = {}
    totals_by_status: Dict[str, int] = {status.value: 0 for status in SubscriptionStatus}
    for (tier, status), count in counts.items():
        by_tier.setdefault(tier, {})[status] = count
        totals_by_status[status] = totals_by_status.get(status, 0) + count

    plans_by_id = {plan.id: plan for plan in plans}
    by_plan: Dict[str, int] = {}
    for subscription in active_subscriptions:
        by_plan[subscription.plan_id] = by_plan.get(subscription.plan_id, 0) + 1

    return {
        "captured_at": now.isoformat(),
        "window_start": (now - timedelta(days=window_days)).isoformat(),
        "currency": currency,
        "total_active": totals_by_status[SubscriptionStatus.ACTIVE.value],
        "total_trialing": totals_by_status[SubscriptionStatus.TRIALING.value],
        "total_past_due": totals_by_status[SubscriptionStatus.PAST_DUE.value],
        "totals_by_status": totals_by_status,
        "by_tier": by_tier,
        "active_by_plan": by_plan,
        "mrr": monthly_recurring_revenue(active_subscriptions, plans_by_id),
        "activity": summarize_activity(
            history, {plan.id: plan.tier for plan in plans}
        ),
    }
