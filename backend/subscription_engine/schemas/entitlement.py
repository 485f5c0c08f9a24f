"""
Entitlement schemas for API request/response validation.

WHAT: Results of feature and usage-limit checks, and usage write requests.

WHY: Denials always carry a reason and usage results always carry the
limit and current usage, so clients can explain a denial and show
usage bars without a second request.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class FeatureAccessResult(BaseModel):
    """Outcome of a feature access check."""

    allowed: bool
    feature_id: str
    reason: Optional[str] = Field(
        default=None, description="Human-readable reason, set when access is denied"
    )


class UsageLimitResult(BaseModel):
    """
    Outcome of a usage limit check.

    NOTE: limit is None when the plan sets no limit for the metric,
    -1 when the metric is explicitly unlimited.
    """

    allowed: bool
    metric: str
    requested_amount: int
    reason: Optional[str] = None
    limit: Optional[int] = None
    current_usage: Optional[int] = None


class ExceededLimit(BaseModel):
    """A metric whose cached usage is above the plan limit."""

    metric: str
    limit: int
    current_usage: int


class EntitlementSummary(BaseModel):
    """Everything an organization is entitled to, for settings pages."""

    org_id: str
    plan_id: Optional[str] = None
    status: Optional[str] = None
    is_active: bool = False
    features: List[str]
    limits: Dict[str, int]
    usage: Dict[str, int] = Field(default_factory=dict)
    exceeded: List[ExceededLimit] = Field(default_factory=list)


class UsageUpdateRequest(BaseModel):
    """Set a usage counter to a final count (not a delta)."""

    value: int = Field(ge=0, description="New total for the metric")


class UsageIncrementRequest(BaseModel):
    """Add to the API request counter."""

    delta: int = Field(default=1, ge=1, le=1_000_000)


class UsageResponse(BaseModel):
    """Usage counters after a write."""

    org_id: str
    metric: str
    value: int
    last_updated: Optional[datetime] = None
