"""
Default plan catalog.

WHAT: The built-in basic, pro and enterprise plans and a seeding helper.

WHY: Plans are reference data managed outside the engine, but a fresh
database (local runs, tests) needs a catalog to check entitlements
against. The basic feature list doubles as the fallback for
organizations without an active subscription when the catalog itself
cannot be read.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.dao.plan import PlanDAO
from subscription_engine.models.plan import PlanTier, SubscriptionPlan

logger = logging.getLogger(__name__)


def _features(tier: PlanTier, *feature_ids: str) -> List[Dict[str, Any]]:
    return [{"id": feature_id, "enabled": True, "tier": tier.value} for feature_id in feature_ids]


BASIC_FEATURES = _features(
    PlanTier.BASIC,
    "basic_goal_management",
    "basic_statistics",
    "basic_competitions",
)

PRO_FEATURES = BASIC_FEATURES + _features(
    PlanTier.PRO,
    "advanced_goal_management",
    "full_statistics",
    "all_competitions",
    "priority_support",
    "custom_dashboards",
)

ENTERPRISE_FEATURES = PRO_FEATURES + _features(
    PlanTier.ENTERPRISE,
    "enterprise_goal_management",
    "advanced_analytics",
    "custom_competitions",
    "dedicated_support",
    "api_access",
    "sso_integration",
    "custom_security",
)

# Features any organization gets, with or without a subscription
BASIC_FEATURE_IDS = tuple(feature["id"] for feature in BASIC_FEATURES)

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "id": "basic",
        "tier": PlanTier.BASIC,
        "display_name": "Basic",
        "description": "Get started with goals and competitions for small teams",
        "price_monthly": Decimal("0"),
        "price_yearly": Decimal("0"),
        "currency": "SEK",
        "features": BASIC_FEATURES,
        "limits": {
            "team_members": 3,
            "media_storage": 100,
            "custom_dashboards": 0,
        },
    },
    {
        "id": "pro",
        "tier": PlanTier.PRO,
        "display_name": "Pro",
        "description": "Full statistics and competitions for growing teams",
        "price_monthly": Decimal("299"),
        "price_yearly": Decimal("2990"),
        "currency": "SEK",
        "features": PRO_FEATURES,
        "limits": {
            "team_members": 10,
            "media_storage": 1024,
            "custom_dashboards": 3,
        },
    },
    {
        "id": "enterprise",
        "tier": PlanTier.ENTERPRISE,
        "display_name": "Enterprise",
        "description": "Advanced analytics, API access and SSO for large organizations",
        "price_monthly": Decimal("999"),
        "price_yearly": Decimal("9990"),
        "currency": "SEK",
        "features": ENTERPRISE_FEATURES,
        "limits": {
            "team_members": 25,
            "media_storage": 15360,
            "custom_dashboards": 10,
            "api_requests": 10000,
            "concurrent_users": 100,
        },
    },
]


async def seed_default_plans(session: AsyncSession) -> List[SubscriptionPlan]:
    """
    Insert or refresh the default catalog.

    WHY: Idempotent, safe to run on every startup of a local or test database.

    Returns:
        The seeded plans, basic first
    """
    dao = PlanDAO(session)
    plans = []
    for definition in DEFAULT_PLANS:
        fields = dict(definition)
        plan_id = fields.pop("id")
        plans.append(await dao.upsert(plan_id, **fields))
    logger.info(f"Seeded {len(plans)} subscription plans")
    return plans
