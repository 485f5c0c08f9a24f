"""
Billing provider webhook schemas.

WHAT: Typed views of the provider objects carried by webhook events,
plus the result returned for every delivery.

WHY: The reconciler should never index into raw provider dicts:
1. Missing fields fail validation in one place with a clear message
2. Unix timestamps become naive UTC datetimes, matching the models
3. Expanded objects (customer, product) collapse to their ids
4. Older and newer provider API shapes map onto the same fields

HOW: Pydantic v2 models with extra="ignore" so new provider fields
never break parsing.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProviderEventType(str, enum.Enum):
    """Provider event types the reconciler handles."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CUSTOMER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    CUSTOMER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def from_epoch(value: Any) -> Any:
    """Convert a unix timestamp to a naive UTC datetime, pass anything else through."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value)
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def object_id(value: Any) -> Any:
    """Collapse an expanded provider object to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class ProviderModel(BaseModel):
    """Base for provider payloads: unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")


# ============================================================================
# Events
# ============================================================================


class ProviderEvent(ProviderModel):
    """
    A verified provider webhook event.

    Fields:
    - id: Provider event id (evt_xxx)
    - type: Event type string, handled or not
    - data: The event's data.object
    - created: When the provider created the event
    """

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def unwrap_data_object(cls, values: Any) -> Any:
        if isinstance(values, dict):
            data = values.get("data")
            if isinstance(data, dict) and isinstance(data.get("object"), dict):
                values = {**values, "data": data["object"]}
        return values

    @field_validator("created", mode="before")
    @classmethod
    def parse_created(cls, value: Any) -> Any:
        return from_epoch(value)

    @property
    def event_type(self) -> Optional[ProviderEventType]:
        """The handled event type, None for types the engine ignores."""
        try:
            return ProviderEventType(self.type)
        except ValueError:
            return None


class WebhookResult(BaseModel):
    """
    Outcome of one webhook delivery.

    WHY: Deliveries are always acknowledged once verified. The result
    tells the caller (and the logs) whether anything changed and why not.
    """

    received: bool = True
    handled: bool = False
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscription_id: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    backfilled: bool = False


# ============================================================================
# Provider subscriptions
# ============================================================================


class ProviderPrice(ProviderModel):
    id: Optional[str] = None
    product: Optional[str] = None

    @field_validator("product", mode="before")
    @classmethod
    def collapse_product(cls, value: Any) -> Any:
        return object_id(value)


class ProviderSubscriptionItem(ProviderModel):
    price: Optional[ProviderPrice] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    @field_validator("current_period_start", "current_period_end", mode="before")
    @classmethod
    def parse_period(cls, value: Any) -> Any:
        return from_epoch(value)


class ProviderSubscriptionItems(ProviderModel):
    data: List[ProviderSubscriptionItem] = Field(default_factory=list)


class ProviderSubscriptionData(ProviderModel):
    """
    Provider subscription object.

    Used for customer.subscription.* payloads and as the return type
    of BillingProvider.retrieve_subscription().

    NOTE: status is the provider's raw value. Map it with
    map_provider_status() before storing it.
    """

    id: str
    customer: Optional[str] = None
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    items: ProviderSubscriptionItems = Field(default_factory=ProviderSubscriptionItems)

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_customer(cls, value: Any) -> Any:
        return object_id(value)

    @field_validator(
        "current_period_start", "current_period_end", "canceled_at", "trial_end", mode="before"
    )
    @classmethod
    def parse_timestamps(cls, value: Any) -> Any:
        return from_epoch(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def first_item(self) -> Optional[ProviderSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def product_id(self) -> Optional[str]:
        item = self.first_item
        return item.price.product if item and item.price else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        return item.price.id if item and item.price else None

    @property
    def organization_id(self) -> Optional[str]:
        value = self.metadata.get("organization_id")
        return str(value) if value else None

    @property
    def plan_id(self) -> Optional[str]:
        """Local plan id, when the subscription was created with one in metadata."""
        return self.metadata.get("plan_id") or None

    def billing_period(self) -> Optional[Tuple[datetime, datetime]]:
        """
        Current period, from the subscription or else its first item.

        WHY: Newer provider API versions moved the period onto items.
        """
        start, end = self.current_period_start, self.current_period_end
        item = self.first_item
        if (start is None or end is None) and item is not None:
            start, end = item.current_period_start, item.current_period_end
        if start is None or end is None:
            return None
        return start, end


# ============================================================================
# Checkout sessions
# ============================================================================


class CustomerDetails(ProviderModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CheckoutSessionData(ProviderModel):
    """checkout.session.completed payload."""

    id: str
    mode: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_details: Optional[CustomerDetails] = None

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def collapse_ids(cls, value: Any) -> Any:
        return object_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def is_subscription(self) -> bool:
        return self.mode == "subscription"

    @property
    def organization_id(self) -> Optional[str]:
        value = self.metadata.get("organization_id")
        return str(value) if value else None

    @property
    def plan_id(self) -> Optional[str]:
        return self.metadata.get("plan_id") or None

    def billing(self) -> Dict[str, Any]:
        """Billing profile fields the session collected."""
        if self.customer_details is None:
            return {}
        return {
            key: value
            for key, value in (
                ("email", self.customer_details.email),
                ("name", self.customer_details.name),
            )
            if value
        }


# ============================================================================
# Invoices
# ============================================================================


class InvoiceLinePeriod(ProviderModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def parse_period(cls, value: Any) -> Any:
        return from_epoch(value)


class InvoiceLine(ProviderModel):
    period: Optional[InvoiceLinePeriod] = None


class InvoiceLines(ProviderModel):
    data: List[InvoiceLine] = Field(default_factory=list)


class InvoiceData(ProviderModel):
    """invoice.payment_succeeded and invoice.payment_failed payload."""

    id: str
    subscription: Optional[str] = None
    customer: Optional[str] = None
    total: int = 0
    currency: Optional[str] = None
    attempt_count: int = 0
    next_payment_attempt: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    lines: InvoiceLines = Field(default_factory=InvoiceLines)

    @model_validator(mode="before")
    @classmethod
    def subscription_from_parent(cls, values: Any) -> Any:
        # Newer API versions nest the subscription under parent.subscription_details
        if isinstance(values, dict) and not values.get("subscription"):
            parent = values.get("parent") or {}
            details = parent.get("subscription_details") or {}
            if details.get("subscription"):
                values = {**values, "subscription": details["subscription"]}
        return values

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def collapse_ids(cls, value: Any) -> Any:
        return object_id(value)

    @field_validator("next_payment_attempt", "period_start", "period_end", mode="before")
    @classmethod
    def parse_timestamps(cls, value: Any) -> Any:
        return from_epoch(value)

    def billing_period(self) -> Optional[Tuple[datetime, datetime]]:
        """
        The subscription period this invoice pays for.

        WHY: For renewal invoices the invoice-level period_start/period_end
        describe the previous period. The line item period is the one
        being paid, so it wins when present.
        """
        for line in self.lines.data:
            if line.period and line.period.start and line.period.end:
                return line.period.start, line.period.end
        if self.period_start and self.period_end and self.period_start < self.period_end:
            return self.period_start, self.period_end
        return None
