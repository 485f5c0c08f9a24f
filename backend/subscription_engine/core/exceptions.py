"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API, webhooks and scheduler jobs
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. A clear split between errors to retry (provider, concurrency)
   and errors to surface (validation, not found)

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        # WHY: Filter out sensitive fields to prevent data leaks
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    WHY: Validation errors are rejected before any mutation, so the
    aggregate state is unchanged when one is raised.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class InvalidPeriodError(ValidationError):
    """
    Raised when a billing period does not satisfy start < end.

    HTTP Status: 400 Bad Request
    """

    default_message = "Billing period start must be before its end"


# ============================================================================
# Authorization Exceptions
# ============================================================================


class AuthorizationError(AppException):
    """
    Raised when a caller lacks the credentials for an operational action.

    WHY: Manual job triggers are guarded by a shared secret. A missing or
    wrong secret is a 403, never a 404, so operators can tell the two apart.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    WHY: Propagated to the caller and never retried silently.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Subscription not found (recoverable for webhook deliveries)."""

    default_message = "Subscription not found"


class PlanNotFoundError(ResourceNotFoundError):
    """Subscription plan not found in the catalog."""

    default_message = "Subscription plan not found"


class ResourceAlreadyExistsError(AppException):
    """
    Raised when attempting to create a resource that already exists.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Resource already exists"


class SubscriptionAlreadyExistsError(ResourceAlreadyExistsError):
    """Organization already has a subscription."""

    default_message = "Organization already has a subscription"


# ============================================================================
# Concurrency Exceptions
# ============================================================================


class ConcurrencyConflictError(AppException):
    """
    Raised when a save loses an optimistic version check.

    WHY: Another writer changed the subscription between load and save.
    The read-mutate-save cycle is retried a bounded number of times.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Subscription was modified concurrently"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Raised when an external service call fails.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class ProviderError(ExternalServiceError):
    """
    Raised when the billing provider API fails.

    WHY: Retried with backoff for user-initiated writes,
    logged and skipped for background sweeps.
    """

    default_message = "Billing provider error"


class ProviderTimeoutError(ProviderError):
    """
    Raised when a billing provider call exceeds its timeout.

    HTTP Status: 504 Gateway Timeout
    """

    status_code = 504
    default_message = "Billing provider request timed out"


class SlackNotificationError(ExternalServiceError):
    """
    Raised when Slack webhook notification fails.

    WHY: Slack notifications are supplementary, so callers
    use the safe send variant and keep going.
    """

    default_message = "Slack notification error"


class NotificationDeliveryError(AppException):
    """
    Raised by scheduler jobs when a billing notification could not be stored.

    WHY: The job records the reminder only after delivery, so the item is
    listed as an error and the next run sends it again.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Notification could not be delivered"


# ============================================================================
# Webhook Exceptions
# ============================================================================


class WebhookError(AppException):
    """
    Base exception for webhook processing.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Webhook error"


class WebhookSignatureError(WebhookError):
    """
    Raised when a webhook signature cannot be verified.

    WHY: Unverified payloads are rejected with 4xx so forged events
    never reach the reconciler.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid webhook signature"


class MissingOrganizationIdError(WebhookError):
    """
    Raised when a checkout session carries no organization id in its metadata.

    WHY: Fatal for that event. It is logged and acknowledged,
    never retried, since a retry would carry the same payload.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "organization_id missing from checkout session metadata"
