"""
Subscription plan catalog model.

WHY: Plans are immutable reference data shared by every entitlement check:
1. Each plan belongs to a tier (basic, pro, enterprise)
2. Plans carry a feature list and numeric usage limits
3. A limit of -1 means unlimited, an absent limit means unbounded
4. Plans are seeded and managed externally, the engine only reads them

ARCHITECTURE:
- Features stored as JSON list of {id, enabled, tier}
- Limits stored as JSON map keyed by UsageMetric values
- provider_product_id links a plan to the billing provider's product
"""

import enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, String, Enum, Numeric, JSON, Text

from subscription_engine.models.base import Base, TimestampMixin


UNLIMITED = -1


class PlanTier(str, enum.Enum):
    """
    Plan tiers in ascending order of entitlement.

    Tiers:
    - BASIC: Free tier, the fallback feature set for inactive organizations
    - PRO: Paid tier for growing teams
    - ENTERPRISE: Highest tier, includes API access and SSO
    """

    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        """Numeric rank used for tier comparisons."""
        return _TIER_RANK[self]

    def is_at_least(self, other: "PlanTier") -> bool:
        """Check whether this tier includes everything in another tier."""
        return self.rank >= other.rank


_TIER_RANK = {
    PlanTier.BASIC: 1,
    PlanTier.PRO: 2,
    PlanTier.ENTERPRISE: 3,
}


class UsageMetric(str, enum.Enum):
    """
    Metered resources that plans put limits on.

    WHY: A closed set keeps limit keys, usage columns and API
    parameters in agreement. camelCase aliases are accepted at the
    API edge via from_name().
    """

    TEAM_MEMBERS = "team_members"
    MEDIA_STORAGE = "media_storage"
    CUSTOM_DASHBOARDS = "custom_dashboards"
    API_REQUESTS = "api_requests"
    CONCURRENT_USERS = "concurrent_users"

    @classmethod
    def from_name(cls, name: str) -> "UsageMetric":
        """
        Resolve a metric from its snake_case or camelCase name.

        Raises:
            ValueError: If the name matches no metric
        """
        normalized = "".join(
            f"_{ch.lower()}" if ch.isupper() else ch for ch in name
        ).lstrip("_")
        return cls(normalized)


class SubscriptionPlan(Base, TimestampMixin):
    """
    A purchasable plan in the catalog.

    WHY: Entitlement checks need the feature set and limits of
    the plan an organization is subscribed to. Keeping both on one
    row keeps a plan an atomic, versionable unit of reference data.
    """

    __tablename__ = "subscription_plans"

    id = Column(String(50), primary_key=True)
    tier = Column(Enum(PlanTier), nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    price_monthly = Column(Numeric(10, 2), nullable=False, default=0)
    price_yearly = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="SEK")

    # [{"id": "api_access", "enabled": true, "tier": "enterprise"}, ...]
    features = Column(JSON, nullable=False, default=list)
    # {"team_members": 10, "media_storage": 1024, ...}
    limits = Column(JSON, nullable=False, default=dict)

    provider_product_id = Column(
        String(255),
        nullable=True,
        unique=True,
        doc="Billing provider product ID (prod_xxx)",
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<SubscriptionPlan(id={self.id}, tier={self.tier.value})>"

    @property
    def price(self) -> Dict[str, Any]:
        """Price group as exposed by the API."""
        return {
            "monthly": float(self.price_monthly or 0),
            "yearly": float(self.price_yearly or 0),
            "currency": self.currency,
        }

    def get_feature(self, feature_id: str) -> Optional[Dict[str, Any]]:
        """Find a feature entry by id."""
        for feature in self.features or []:
            if feature.get("id") == feature_id:
                return feature
        return None

    def has_feature(self, feature_id: str) -> bool:
        """Check whether the plan includes an enabled feature."""
        feature = self.get_feature(feature_id)
        return bool(feature and feature.get("enabled"))

    def feature_ids(self, enabled_only: bool = True) -> List[str]:
        """List feature ids, enabled ones only by default."""
        return [
            f["id"]
            for f in self.features or []
            if f.get("enabled") or not enabled_only
        ]

    def basic_feature_ids(self) -> List[str]:
        """List enabled features tagged with the basic tier."""
        return [
            f["id"]
            for f in self.features or []
            if f.get("enabled") and f.get("tier") == PlanTier.BASIC.value
        ]

    def get_limit(self, metric: UsageMetric) -> Optional[int]:
        """
        Get the plan limit for a metric.

        Returns:
            The limit, UNLIMITED (-1), or None when the plan sets no limit
        """
        value = (self.limits or {}).get(metric.value)
        return int(value) if value is not None else None

    def is_unlimited(self, metric: UsageMetric) -> bool:
        """Check whether a metric is explicitly unlimited."""
        return self.get_limit(metric) == UNLIMITED

    def yearly_savings_percentage(self) -> int:
        """
        Percentage saved by paying yearly instead of twelve monthly payments.

        Returns:
            Rounded percentage, 0 for free plans
        """
        monthly_total = float(self.price_monthly or 0) * 12
        if monthly_total <= 0:
            return 0
        yearly = float(self.price_yearly or 0)
        return round((monthly_total - yearly) / monthly_total * 100)
