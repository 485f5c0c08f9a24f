"""
Unit tests for SlackService.

WHAT: Tests Slack webhook integration.

WHY: Ensures notifications are sent correctly and errors
are handled gracefully.

HOW: Uses mocked HTTP client to verify webhook calls.
"""

import httpx
import pytest
from unittest.mock import AsyncMock, patch, MagicMock

from subscription_engine.services.slack_service import (
    SlackService,
    build_actions_block,
    build_billing_notification_message,
    build_fields_block,
    build_header_block,
)
from subscription_engine.core.exceptions import SlackNotificationError


class TestSlackService:
    """Tests for SlackService class."""

    @pytest.fixture
    def slack_service(self):
        """Create SlackService with test configuration."""
        return SlackService(
            webhook_url="https://hooks.slack.com/services/test/test/test",
            enabled=True,
        )

    @pytest.mark.asyncio
    async def test_send_message_success(self, slack_service):
        """Test successful message sending."""
        with patch("subscription_engine.services.slack_service.httpx.AsyncClient") as mock_client:
            mock_response = MagicMock()
            mock_response.status_code = 200
            mock_response.text = "ok"
            post = AsyncMock(return_value=mock_response)
            mock_client.return_value.__aenter__.return_value.post = post

            result = await slack_service.send_message("Test message", [build_header_block("Hi")])

            assert result is True
            assert post.call_args.kwargs["json"]["blocks"][0]["type"] == "header"

    @pytest.mark.asyncio
    async def test_send_message_disabled(self):
        """Test message not sent when disabled."""
        service = SlackService(webhook_url="https://hooks.slack.com/services/x", enabled=False)
        assert await service.send_message("Test message") is False

    @pytest.mark.asyncio
    async def test_send_message_no_webhook_url(self):
        """Test message not sent when no webhook URL."""
        service = SlackService(webhook_url=None, enabled=True)
        assert await service.send_message("Test message") is False

    @pytest.mark.asyncio
    async def test_send_message_error_response(self, slack_service):
        """Test error response raises exception."""
        with patch("subscription_engine.services.slack_service.httpx.AsyncClient") as mock_client:
            mock_response = MagicMock()
            mock_response.status_code = 400
            mock_response.text = "invalid_payload"
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=mock_response
            )

            with pytest.raises(SlackNotificationError):
                await slack_service.send_message("Test message")

    @pytest.mark.asyncio
    async def test_send_message_timeout(self, slack_service):
        """Test timeout raises exception."""
        with patch("subscription_engine.services.slack_service.httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.TimeoutException("timed out")
            )

            with pytest.raises(SlackNotificationError):
                await slack_service.send_message("Test message")

    @pytest.mark.asyncio
    async def test_send_message_safe_swallows_errors(self, slack_service):
        """Test safe send returns False instead of raising."""
        with patch.object(
            slack_service,
            "send_message",
            AsyncMock(side_effect=SlackNotificationError(message="down")),
        ):
            assert await slack_service.send_message_safe("Test message") is False


class TestBlockBuilders:
    """Tests for Block Kit builder functions."""

    def test_header_is_truncated(self):
        block = build_header_block("x" * 200)
        assert len(block["text"]["text"]) == 150

    def test_fields_block(self):
        block = build_fields_block([{"label": "Plan", "value": "Pro"}])
        assert block["fields"][0]["text"] == "*Plan:*\nPro"

    def test_actions_block(self):
        block = build_actions_block([{"text": "Open", "url": "https://example.com"}])
        assert block["elements"][0]["url"] == "https://example.com"
        assert block["elements"][0]["action_id"] == "button_0"


class TestBillingNotificationMessage:
    """Tests for the billing notification template."""

    def test_payment_failed_message(self):
        text, blocks = build_billing_notification_message(
            org_id="org-1",
            notification_type="payment_failed",
            title="Payment failed",
            message="Please update your payment method.",
            metadata={"subscription_id": 5, "next_payment_attempt": None},
            frontend_url="https://app.example.com/",
        )

        assert text == "Payment Failed: Payment failed (organization org-1)"
        assert blocks[0]["text"]["text"] == "Payment Failed"
        labels = [field["text"] for field in blocks[2]["fields"]]
        assert labels == ["*Organization:*\norg-1", "*Subscription id:*\n5"]
        assert blocks[-1]["elements"][0]["url"] == "https://app.example.com/organizations/org-1/billing"

    def test_without_frontend_url_has_no_button(self):
        _, blocks = build_billing_notification_message(
            org_id="org-1",
            notification_type="subscription_expired",
            title="Your subscription has ended",
            message="Subscribe again to restore access.",
        )

        assert [block["type"] for block in blocks] == ["header", "section", "section", "context"]
