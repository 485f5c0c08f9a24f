"""
Subscription schemas for API request/response validation.

WHAT: Pydantic schemas for plans, subscriptions, history and the
user-initiated subscription writes.

WHY: Schemas provide:
1. Type-safe request/response handling
2. Automatic validation with clear error messages
3. OpenAPI documentation generation

HOW: Uses Pydantic v2 with from_attributes, so ORM rows are returned
directly. The Subscription aggregate exposes its usage, payment and
billing groups as properties that map onto nested schemas here.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from subscription_engine.models.plan import PlanTier
from subscription_engine.models.subscription import SubscriptionStatus


# ============================================================================
# Plans
# ============================================================================


class PlanFeature(BaseModel):
    id: str
    enabled: bool = True
    tier: PlanTier


class PlanPrice(BaseModel):
    monthly: float
    yearly: float
    currency: str


class PlanResponse(BaseModel):
    """
    Catalog plan for pricing pages.

    NOTE: A limit of -1 means unlimited, a missing metric means the
    plan sets no limit for it.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    tier: PlanTier
    display_name: str
    description: Optional[str] = None
    price: PlanPrice
    features: List[PlanFeature]
    limits: Dict[str, int]
    yearly_savings_percentage: int = 0


class PlansResponse(BaseModel):
    plans: List[PlanResponse]


# ============================================================================
# Subscriptions
# ============================================================================


class BillingDetails(BaseModel):
    """Billing profile. Every field is optional so partial updates work."""

    email: Optional[EmailStr] = None
    name: Optional[str] = Field(default=None, max_length=255)
    address: Optional[Dict[str, Any]] = None
    vat_number: Optional[str] = Field(default=None, max_length=50)


class BillingInfo(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    vat_number: Optional[str] = None


class PaymentInfo(BaseModel):
    provider: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_method_id: Optional[str] = None


class UsageInfo(BaseModel):
    team_members: int = 0
    media_storage: int = 0
    custom_dashboards: int = 0
    api_requests: int = 0
    last_updated: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    """
    Subscription details.

    WHY: Frontend needs subscription info for:
    - Settings/billing page display
    - Feature gating decisions
    - Renewal and trial countdowns
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: str
    plan_id: str
    status: SubscriptionStatus
    is_active: bool
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    payment: PaymentInfo
    billing: BillingInfo
    usage: UsageInfo
    version: int
    created_at: datetime
    updated_at: datetime


class SubscriptionHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    event_data: Dict[str, Any]
    created_at: datetime


class SubscriptionHistoryResponse(BaseModel):
    org_id: str
    entries: List[SubscriptionHistoryEntry]


# ============================================================================
# Requests
# ============================================================================


class StartTrialRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=50)
    billing: Optional[BillingDetails] = None


class CreateSubscriptionRequest(BaseModel):
    """
    Create a paid subscription with the billing provider.

    WHY: payment_method_id is optional because the provider can collect
    it later (incomplete status until the first payment).
    """

    plan_id: str = Field(min_length=1, max_length=50)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)
    billing: Optional[BillingDetails] = None


class PlanChangeRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=50)


class CancelSubscriptionRequest(BaseModel):
    """
    Cancel a subscription.

    WHY: at_period_end=True keeps access until the paid period ends.
    """

    at_period_end: bool = Field(
        default=True,
        description="Keep access until the current period ends",
    )


class PaymentMethodUpdateRequest(BaseModel):
    payment_method_id: str = Field(min_length=1, max_length=255)


class BillingDetailsUpdateRequest(BillingDetails):
    """Fields to change. Omitted fields keep their value."""
