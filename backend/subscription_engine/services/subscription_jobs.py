"""
Scheduled subscription jobs.

WHAT: The periodic sweeps that keep local subscriptions consistent with
the billing provider and remind organizations about renewals, expiries
and failed payments.

WHY: Webhooks can be missed or arrive out of order, and some transitions
(a subscription reaching the end of a cancelled period) produce no
webhook at all. The jobs close those gaps:
1. sync_subscription_statuses: re-read linked subscriptions from the provider
2. check_renewal_reminders: warn about renewals and expiries within 7 days
3. process_expired_subscriptions: end subscriptions whose cancelled period ran out
4. send_payment_failure_reminders: nag past_due organizations
5. update_subscription_statistics: weekly snapshot

HOW: Every job follows the same shape:
- candidates are read in one short read-only session
- each item is processed in its own unit of work, under the
  organization's lock, so one failure never rolls back another item
- per-item errors are logged and collected, the sweep continues
- a job never raises, it returns a JobResult
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from subscription_engine.core.config import Settings, settings as default_settings
from subscription_engine.core.exceptions import AppException, NotificationDeliveryError
from subscription_engine.db.session import session_scope
from subscription_engine.models.events import DomainEvent, SubscriptionEventKind
from subscription_engine.models.notification import NotificationType
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.services.billing_provider import BillingProvider
from subscription_engine.services.concurrency import SubscriptionLocks, run_serialized
from subscription_engine.services.event_bus import EventBus
from subscription_engine.services.notification_service import NotificationService
from subscription_engine.services.provider_sync import retrieve_with_timeout, sync_from_provider
from subscription_engine.services.repository import SqlSubscriptionRepository
from subscription_engine.services.statistics import build_statistics

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """
    Summary of one job run.

    NOTE: success is False only when the job could not run at all (for
    example the candidate query failed). Per-item failures are listed in
    errors while success stays True.
    """

    job: str
    success: bool = True
    processed_count: int = 0
    updated_count: int = 0
    sent_count: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def add_error(self, error: Exception, subscription_id: Optional[int] = None) -> None:
        message = error.message if isinstance(error, AppException) else str(error)
        self.errors.append(
            {
                "subscription_id": subscription_id,
                "error": message or type(error).__name__,
                "error_type": type(error).__name__,
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "success": self.success,
            "processed_count": self.processed_count,
            "updated_count": self.updated_count,
            "sent_count": self.sent_count,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class SubscriptionJobs:
    """
    The five scheduled jobs.

    Attributes:
        session_factory: Factory for per-item sessions
        provider: Billing provider for the status sync
        event_bus: Bus for job events
        notifications: Notification port for reminders
        locks: Per-organization write locks shared with the services
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

    @property
    def jobs(self) -> Dict[str, Callable[[], Awaitable[JobResult]]]:
        """Job name to coroutine function, as registered with the scheduler."""
        return {
            "sync_subscription_statuses": self.sync_subscription_statuses,
            "check_renewal_reminders": self.check_renewal_reminders,
            "process_expired_subscriptions": self.process_expired_subscriptions,
            "send_payment_failure_reminders": self.send_payment_failure_reminders,
            "update_subscription_statistics": self.update_subscription_statistics,
        }

    # ========================================================================
    # Jobs
    # ========================================================================

    async def sync_subscription_statuses(self) -> JobResult:
        """
        Re-read every provider-linked subscription and apply its state.

        WHAT: Status, period and cancel flag, plus the plan when the
        provider product maps to another catalog plan. Each provider call
        is bounded by PROVIDER_TIMEOUT_SECONDS, a hung call counts as one
        error and the sweep moves on.
        """
        result = JobResult(job="sync_subscription_statuses")
        logger.info("Starting subscription status sync job")

        candidates = await self._candidates(
            result, lambda repo: repo.get_subscriptions_with_provider_linkage()
        )
        for candidate in candidates:
            try:
                remote = await retrieve_with_timeout(
                    self.provider,
                    candidate.provider_subscription_id,
                    self.config.PROVIDER_TIMEOUT_SECONDS,
                )

                async def apply(subscription: Subscription, repo: SqlSubscriptionRepository) -> bool:
                    changed = sync_from_provider(subscription, remote)
                    plan = None
                    if remote.product_id:
                        plan = await repo.get_subscription_plan_by_provider_product(remote.product_id)
                    if plan is not None:
                        changed = subscription.change_plan(plan.id) or changed
                    return changed

                if await self._write(candidate, apply):
                    result.updated_count += 1
                result.processed_count += 1
            except Exception as e:
                self._item_failed(result, candidate, e)

        return self._finish(result)

    async def check_renewal_reminders(self, now: Optional[datetime] = None) -> JobResult:
        """
        Remind organizations whose period ends within RENEWAL_REMINDER_DAYS.

        WHAT: Subscriptions that will auto-renew get renewal_reminder,
        those cancelled at period end get expiry_reminder. One reminder
        is sent per subscription and period, repeated runs skip it.
        """
        result = JobResult(job="check_renewal_reminders")
        now = now or datetime.utcnow()
        window_end = now + timedelta(days=self.config.RENEWAL_REMINDER_DAYS)
        logger.info("Starting renewal reminder job")

        candidates = await self._candidates(
            result, lambda repo: repo.get_subscriptions_renewing_between(now, window_end)
        )
        for subscription in candidates:
            result.processed_count += 1
            try:
                if subscription.cancel_at_period_end:
                    kind = SubscriptionEventKind.EXPIRY_REMINDER
                    notification_type = NotificationType.EXPIRY_REMINDER
                    content = {
                        "title": "Your subscription ends soon",
                        "message": (
                            f"Your subscription ends on {_date(subscription.current_period_end)}. "
                            "Reactivate it to keep access to your plan."
                        ),
                    }
                else:
                    kind = SubscriptionEventKind.RENEWAL_REMINDER
                    notification_type = NotificationType.RENEWAL_REMINDER
                    content = {
                        "title": "Your subscription renews soon",
                        "message": (
                            f"Your subscription renews automatically on "
                            f"{_date(subscription.current_period_end)}."
                        ),
                    }

                period_end = subscription.current_period_end.isoformat()
                if await self._already_sent(subscription, kind, period_end):
                    continue

                data = {
                    "period_end": period_end,
                    "days_until_renewal": subscription.days_until_renewal(now),
                }
                await self._notify(
                    subscription,
                    notification_type,
                    content,
                    {"subscription_id": subscription.id, **data},
                )
                await self._record(subscription, kind, data)
                result.sent_count += 1
            except Exception as e:
                self._item_failed(result, subscription, e)

        return self._finish(result)

    async def process_expired_subscriptions(self, now: Optional[datetime] = None) -> JobResult:
        """
        Cancel subscriptions whose cancelled period has ended.

        WHAT: cancel_at_period_end set, period end <= now, status still
        active or trialing. Each one moves to canceled, publishes
        subscription.expired and notifies the organization.
        """
        result = JobResult(job="process_expired_subscriptions")
        now = now or datetime.utcnow()
        logger.info("Starting expired subscription job")

        candidates = await self._candidates(result, lambda repo: repo.get_expired_subscriptions(now))
        for candidate in candidates:
            try:

                async def apply(subscription: Subscription, repo: SqlSubscriptionRepository) -> bool:
                    if not (
                        subscription.cancel_at_period_end
                        and subscription.is_active
                        and subscription.current_period_end <= now
                    ):
                        return False
                    subscription.update_status(SubscriptionStatus.CANCELED)
                    return True

                expired_event = _event(
                    candidate,
                    SubscriptionEventKind.EXPIRED,
                    period_end=candidate.current_period_end,
                )
                if not await self._write(candidate, apply, extra_events=[expired_event]):
                    continue
                result.processed_count += 1
                result.updated_count += 1
                await self._notify(
                    candidate,
                    NotificationType.SUBSCRIPTION_EXPIRED,
                    {
                        "title": "Your subscription has ended",
                        "message": "Your subscription has ended. Subscribe again to restore access.",
                    },
                    {"subscription_id": candidate.id, "period_end": candidate.current_period_end},
                )
                result.sent_count += 1
            except Exception as e:
                self._item_failed(result, candidate, e)

        return self._finish(result)

    async def send_payment_failure_reminders(self) -> JobResult:
        """
        Remind every past_due organization to fix its payment method.

        WHAT: The next retry date comes from the latest payment_failed
        history entry, when the provider reported one.
        """
        result = JobResult(job="send_payment_failure_reminders")
        logger.info("Starting payment failure reminder job")

        candidates = await self._candidates(
            result, lambda repo: repo.get_subscriptions_with_failed_payments()
        )
        for subscription in candidates:
            result.processed_count += 1
            try:
                next_attempt = await self._next_payment_attempt(subscription)
                message = "We still could not collect payment for your subscription. Please update your payment method."
                if next_attempt:
                    message += f" The next attempt is on {next_attempt[:10]}."

                data = {"next_payment_attempt": next_attempt}
                await self._notify(
                    subscription,
                    NotificationType.PAYMENT_REMINDER,
                    {"title": "Payment still outstanding", "message": message},
                    {"subscription_id": subscription.id, **data},
                )
                await self._record(subscription, SubscriptionEventKind.PAYMENT_REMINDER, data)
                result.sent_count += 1
            except Exception as e:
                self._item_failed(result, subscription, e)

        return self._finish(result)

    async def update_subscription_statistics(self, now: Optional[datetime] = None) -> JobResult:
        """
        Build, store and publish the weekly statistics snapshot.
        """
        result = JobResult(job="update_subscription_statistics")
        now = now or datetime.utcnow()
        logger.info("Starting subscription statistics job")

        try:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                statistics = build_statistics(
                    counts=await repo.count_by_tier_and_status(),
                    plans=await repo.get_all_subscription_plans(),
                    active_subscriptions=await repo.get_subscriptions_by_status(
                        SubscriptionStatus.ACTIVE
                    ),
                    history=await repo.get_history_since(now - timedelta(days=7)),
                    currency=self.config.STATISTICS_CURRENCY,
                    now=now,
                )
                await repo.save_statistics_snapshot(statistics, captured_at=now)

            await self.event_bus.publish(
                SubscriptionEventKind.STATISTICS_UPDATED.value,
                {"captured_at": now.isoformat(), "statistics": statistics},
            )
            result.processed_count = 1
            result.updated_count = 1
        except Exception as e:
            logger.error(f"Subscription statistics job failed: {e}", exc_info=True)
            result.success = False
            result.add_error(e)

        return self._finish(result)

    # ========================================================================
    # Internals
    # ========================================================================

    async def _candidates(
        self,
        result: JobResult,
        query: Callable[[SqlSubscriptionRepository], Awaitable[List[Subscription]]],
    ) -> List[Subscription]:
        """Run the candidate query; a failure marks the job unsuccessful."""
        try:
            async with self.session_factory() as session:
                return await query(SqlSubscriptionRepository(session))
        except Exception as e:
            logger.error(f"{result.job}: failed to load subscriptions: {e}", exc_info=True)
            result.success = False
            result.add_error(e)
            return []

    async def _write(
        self,
        candidate: Subscription,
        apply: Callable[[Subscription, SqlSubscriptionRepository], Awaitable[bool]],
        extra_events: Optional[List[DomainEvent]] = None,
    ) -> bool:
        """
        Serialized reload-apply-save of one subscription.

        extra_events are written to history and published only when
        apply reports a change.

        Returns:
            What apply returned
        """

        async def attempt() -> bool:
            async with session_scope(self.session_factory) as session:
                repo = SqlSubscriptionRepository(session)
                subscription = await repo.get_subscription_by_id(candidate.id)
                if subscription is None:
                    return False
                changed = await apply(subscription, repo)
                events = await repo.save_subscription(subscription)
                if changed:
                    for event in extra_events or []:
                        await repo.append_history(
                            subscription.id, event.kind.history_type, event.to_payload()
                        )
                    events = events + list(extra_events or [])
            await self.event_bus.publish_events(events)
            return changed

        return await run_serialized(
            self.locks, candidate.org_id, attempt, self.config.CONCURRENCY_MAX_RETRIES
        )

    async def _notify(
        self,
        subscription: Subscription,
        notification_type: NotificationType,
        content: Dict[str, str],
        metadata: Dict[str, Any],
    ) -> None:
        """
        Send a notification for a job item.

        Raises:
            NotificationDeliveryError: If the notification was not stored
        """
        sent = await self.notifications.send_notification(
            subscription.org_id, notification_type, content, metadata
        )
        if not sent:
            raise NotificationDeliveryError(
                message=f"{notification_type.value} notification was not stored",
                org_id=subscription.org_id,
            )

    async def _record(
        self, subscription: Subscription, kind: SubscriptionEventKind, data: Dict[str, Any]
    ) -> None:
        """Write a job event to history, then publish it."""
        event = _event(subscription, kind, **data)
        async with session_scope(self.session_factory) as session:
            await SqlSubscriptionRepository(session).append_history(
                subscription.id, kind.history_type, event.to_payload()
            )
        await self.event_bus.publish_event(event)

    async def _already_sent(
        self, subscription: Subscription, kind: SubscriptionEventKind, period_end: str
    ) -> bool:
        async with self.session_factory() as session:
            latest = await SqlSubscriptionRepository(session).get_latest_history_entry(
                subscription.id, kind.history_type
            )
        return latest is not None and (latest.event_data or {}).get("period_end") == period_end

    async def _next_payment_attempt(self, subscription: Subscription) -> Optional[str]:
        async with self.session_factory() as session:
            latest = await SqlSubscriptionRepository(session).get_latest_history_entry(
                subscription.id, SubscriptionEventKind.PAYMENT_FAILED.history_type
            )
        if latest is None:
            return None
        return (latest.event_data or {}).get("next_payment_attempt")

    def _item_failed(self, result: JobResult, subscription: Subscription, error: Exception) -> None:
        logger.error(
            f"{result.job}: subscription {subscription.id} failed: {error}",
            extra={"job": result.job, "subscription_id": subscription.id, "org_id": subscription.org_id},
        )
        result.add_error(error, subscription.id)

    def _finish(self, result: JobResult) -> JobResult:
        result.finished_at = datetime.utcnow()
        elapsed = (result.finished_at - result.started_at).total_seconds()
        logger.info(
            f"{result.job} completed in {elapsed:.2f}s. "
            f"Processed: {result.processed_count}, Updated: {result.updated_count}, "
            f"Sent: {result.sent_count}, Errors: {len(result.errors)}",
            extra={"job": result.job, "errors": len(result.errors)},
        )
        return result


def _event(subscription: Subscription, kind: SubscriptionEventKind, **data: Any) -> DomainEvent:
    return DomainEvent(
        kind=kind,
        org_id=subscription.org_id,
        subscription_id=subscription.id,
        data=data,
    )


def _date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")
