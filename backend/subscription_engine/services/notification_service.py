"""
Notification Service for billing events.

WHAT: Sends renewal, expiry and payment notifications to organizations.

WHY: Reminder and failure notices are the only user-facing output of
webhook reconciliation and the scheduler jobs. Centralizing them keeps
wording consistent and lets channels be added without touching callers.

HOW: Each notification is stored as a BillingNotification (the in-app
inbox) in its own short transaction, then mirrored to Slack. Sending is
fire-and-forget: failures are logged and reported as False, never raised
into the reconciliation or job that triggered them.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from subscription_engine.core.exceptions import ValidationError
from subscription_engine.dao.notification import NotificationDAO
from subscription_engine.db.session import session_scope
from subscription_engine.models.events import json_safe
from subscription_engine.models.notification import BillingNotification, NotificationType
from subscription_engine.services.slack_service import (
    SlackService,
    build_billing_notification_message,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Notification port implementation: persisted inbox plus Slack mirror.

    Attributes:
        session_factory: Session factory for the inbox writes
        slack_service: Slack channel (disabled unless configured)
        base_url: Frontend URL used for links in Slack messages
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        slack_service: Optional[SlackService] = None,
        base_url: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.slack_service = slack_service or SlackService()
        self.base_url = base_url

    async def send_notification(
        self,
        org_id: str,
        notification_type: Union[NotificationType, str],
        content: Mapping[str, str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a notification to an organization.

        Args:
            org_id: Recipient organization
            notification_type: One of NotificationType
            content: {"title": ..., "message": ...}
            metadata: Extra JSON-safe context (subscription id, dates)

        Returns:
            True if the notification was stored, False if storing failed

        Raises:
            ValidationError: If the type is unknown or title/message is missing
        """
        notification_type = _coerce_type(notification_type)
        title = (content or {}).get("title")
        message = (content or {}).get("message")
        if not title or not message:
            raise ValidationError(
                message="Notification content requires a title and a message",
                notification_type=notification_type.value,
            )
        metadata = json_safe(dict(metadata or {}))

        try:
            async with session_scope(self.session_factory) as session:
                await NotificationDAO(session).create(
                    org_id=org_id,
                    notification_type=notification_type,
                    title=title,
                    message=message,
                    extra_data=metadata,
                )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to store {notification_type.value} notification for org {org_id}: {e}",
                extra={"org_id": org_id, "notification_type": notification_type.value},
            )
            return False

        logger.info(
            f"Sent {notification_type.value} notification to org {org_id}",
            extra={"org_id": org_id, "notification_type": notification_type.value},
        )

        text, blocks = build_billing_notification_message(
            org_id=org_id,
            notification_type=notification_type.value,
            title=title,
            message=message,
            metadata=metadata,
            frontend_url=self.base_url,
        )
        await self.slack_service.send_message_safe(text, blocks)
        return True

    async def list_notifications(
        self, org_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[BillingNotification]:
        """Newest notifications of an organization."""
        async with session_scope(self.session_factory) as session:
            return await NotificationDAO(session).list_for_org(org_id, unread_only, limit)

    async def mark_all_read(self, org_id: str) -> int:
        async with session_scope(self.session_factory) as session:
            return await NotificationDAO(session).mark_all_read(org_id)


def _coerce_type(value: Union[NotificationType, str]) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError as e:
        raise ValidationError(
            message=f"Unknown notification type: {value}",
            notification_type=str(value),
        ) from e
