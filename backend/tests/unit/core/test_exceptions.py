"""
Tests for custom exception hierarchy.

WHY: Comprehensive exception testing ensures:
1. Exceptions serialize correctly without leaking sensitive data
2. HTTP status codes map correctly
3. Subclasses keep the status of the family callers catch
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from subscription_engine.core.exceptions import (
    AppException,
    AuthorizationError,
    ConcurrencyConflictError,
    InvalidPeriodError,
    MissingOrganizationIdError,
    PlanNotFoundError,
    ProviderError,
    ProviderTimeoutError,
    ResourceNotFoundError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from subscription_engine.core.exception_handlers import app_exception_handler


class TestAppException:
    """Test base AppException class."""

    def test_default_message(self):
        """Verify default message is used when none provided."""
        exc = AppException()
        assert exc.message == "An unexpected error occurred"
        assert exc.status_code == 500

    def test_custom_message_and_status(self):
        exc = AppException(message="Custom error message", status_code=418)
        assert exc.message == "Custom error message"
        assert exc.status_code == 418

    def test_context_data(self):
        """Verify context data is stored."""
        exc = AppException(org_id="org-1", subscription_id=7)
        assert exc.context == {"org_id": "org-1", "subscription_id": 7}

    def test_to_dict_filters_sensitive_fields(self):
        """Verify secrets and signatures never reach the response body."""
        exc = AppException(message="Failed", secret="whsec_x", signature="t=1,v1=abc", org_id="org-1")

        result = exc.to_dict()

        assert result == {
            "error": "AppException",
            "message": "Failed",
            "status_code": 500,
            "details": {"org_id": "org-1"},
        }

    def test_to_dict_without_context(self):
        assert AppException().to_dict()["details"] is None


class TestStatusCodes:
    """Test the HTTP status of each exception family."""

    @pytest.mark.parametrize(
        "exc_class,status_code",
        [
            (ValidationError, 400),
            (InvalidPeriodError, 400),
            (AuthorizationError, 403),
            (SubscriptionNotFoundError, 404),
            (PlanNotFoundError, 404),
            (SubscriptionAlreadyExistsError, 409),
            (ConcurrencyConflictError, 409),
            (ProviderError, 502),
            (ProviderTimeoutError, 504),
            (WebhookSignatureError, 400),
            (MissingOrganizationIdError, 400),
        ],
    )
    def test_status_code(self, exc_class, status_code):
        assert exc_class().status_code == status_code

    def test_families(self):
        assert issubclass(InvalidPeriodError, ValidationError)
        assert issubclass(SubscriptionNotFoundError, ResourceNotFoundError)
        assert issubclass(ProviderTimeoutError, ProviderError)


class TestExceptionHandler:
    """Test the FastAPI handler for AppException."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_exception_handler(AppException, app_exception_handler)

        @app.get("/missing")
        async def missing():
            raise SubscriptionNotFoundError(org_id="org-1")

        @app.get("/provider")
        async def provider():
            raise ProviderError(message="Billing provider error during create_subscription")

        return TestClient(app)

    def test_not_found_response(self, client):
        response = client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "SubscriptionNotFoundError"
        assert response.json()["details"] == {"org_id": "org-1"}

    def test_provider_error_response(self, client):
        response = client.get("/provider")

        assert response.status_code == 502
        assert response.json()["message"] == "Billing provider error during create_subscription"
