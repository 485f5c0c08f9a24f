"""
Slack Webhook Integration Service.

WHAT: Mirrors billing notifications to a Slack channel via an incoming webhook.

WHY: Payment failures and expiring subscriptions need attention from the
billing team, not only from organization admins reading the in-app inbox.

HOW: Posts Block Kit formatted messages with httpx. Delivery is best
effort: callers use send_message_safe() so Slack outages never fail a
webhook delivery or a scheduler job.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from subscription_engine.core.exceptions import SlackNotificationError

logger = logging.getLogger(__name__)


class SlackService:
    """
    Client for a Slack incoming webhook.

    Attributes:
        webhook_url: Slack Incoming Webhook URL
        enabled: Whether messages are sent at all
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        enabled: bool = False,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.enabled = enabled
        self.timeout = timeout

    async def send_message(
        self,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        """
        Post a message to the webhook.

        Args:
            text: Plain text message, also the fallback for blocks
            blocks: Optional Block Kit blocks

        Returns:
            True if Slack accepted the message, False if disabled

        Raises:
            SlackNotificationError: If the webhook call fails
        """
        if not self.enabled:
            logger.debug("Slack notifications disabled, skipping message")
            return False

        if not self.webhook_url:
            logger.warning("Slack webhook URL not configured")
            return False

        payload: Dict[str, Any] = {"text": text}
        if blocks:
            payload["blocks"] = blocks

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"Slack webhook timeout: {e}")
            raise SlackNotificationError(
                message="Slack webhook request timed out",
                timeout=self.timeout,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Slack webhook request error: {e}")
            raise SlackNotificationError(
                message="Failed to connect to Slack webhook",
                error=str(e),
            ) from e

        # Slack answers a plain "ok" on success
        if response.status_code == 200 and response.text == "ok":
            logger.info("Slack message sent successfully")
            return True

        logger.error(f"Slack webhook returned error: {response.status_code} - {response.text}")
        raise SlackNotificationError(
            message="Slack webhook returned an error",
            response_status=response.status_code,
            response_text=response.text,
        )

    async def send_message_safe(
        self,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        """
        Send a message, logging instead of raising on failure.

        Returns:
            True if the message was sent, False otherwise
        """
        try:
            return await self.send_message(text, blocks)
        except SlackNotificationError as e:
            logger.error(f"Failed to send Slack notification: {e.message}")
            return False


# ============================================================================
# Block Kit Builders
# ============================================================================


def build_header_block(text: str) -> Dict[str, Any]:
    """Header block, truncated to Slack's 150 character limit."""
    return {
        "type": "header",
        "text": {"type": "plain_text", "text": text[:150], "emoji": True},
    }


def build_section_block(text: str) -> Dict[str, Any]:
    """Markdown section block."""
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def build_fields_block(fields: List[Dict[str, str]]) -> Dict[str, Any]:
    """
    Two-column section of label/value pairs.

    Args:
        fields: List of dicts with 'label' and 'value' keys
    """
    return {
        "type": "section",
        "fields": [
            {"type": "mrkdwn", "text": f"*{f['label']}:*\n{f['value']}"}
            for f in fields
        ],
    }


def build_context_block(text: str) -> Dict[str, Any]:
    """Small muted text for ids and timestamps."""
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": text}]}


def build_actions_block(buttons: List[Dict[str, str]]) -> Dict[str, Any]:
    """Link buttons, each a dict with 'text' and 'url'."""
    return {
        "type": "actions",
        "elements": [
            {
                "type": "button",
                "text": {"type": "plain_text", "text": btn["text"], "emoji": True},
                "url": btn["url"],
                "action_id": f"button_{i}",
            }
            for i, btn in enumerate(buttons)
        ],
    }


# ============================================================================
# Billing Message Templates
# ============================================================================

_NOTIFICATION_HEADERS = {
    "renewal_reminder": "Subscription Renewing Soon",
    "expiry_reminder": "Subscription Expiring Soon",
    "payment_failed": "Payment Failed",
    "payment_reminder": "Payment Still Outstanding",
    "subscription_expired": "Subscription Expired",
}


def build_billing_notification_message(
    org_id: str,
    notification_type: str,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
    frontend_url: Optional[str] = None,
) -> Tuple[str, List[Dict[str, Any]]]:
    """
    Build the Slack mirror of a billing notification.

    Args:
        org_id: Organization the notification is addressed to
        notification_type: NotificationType value
        title: Notification title shown in the app
        message: Notification body shown in the app
        metadata: Extra values (subscription id, dates), shown as fields
        frontend_url: Base URL for a link to the organization's billing page

    Returns:
        Tuple of (fallback text, Block Kit blocks)
    """
    header = _NOTIFICATION_HEADERS.get(notification_type, title)
    text = f"{header}: {title} (organization {org_id})"

    fields = [{"label": "Organization", "value": org_id}]
    for key, value in sorted((metadata or {}).items()):
        if value is not None:
            fields.append({"label": key.replace("_", " ").capitalize(), "value": str(value)})

    blocks = [
        build_header_block(header),
        build_section_block(f"*{title}*\n{message}"),
        # Slack allows at most 10 fields per section
        build_fields_block(fields[:10]),
        build_context_block(f"Notification type: {notification_type}"),
    ]
    if frontend_url:
        blocks.append(
            build_actions_block([
                {
                    "text": "View Billing",
                    "url": f"{frontend_url.rstrip('/')}/organizations/{org_id}/billing",
                }
            ])
        )

    return text, blocks
