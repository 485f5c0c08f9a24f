"""
Integration tests for the entitlement API.

WHAT: Tests entitlement summaries, feature and usage checks, and usage
writes via HTTP.

WHY: Product code gates features through these endpoints. Denials must
come back as 200 with a reason, never as an error status.
"""

import pytest
from httpx import AsyncClient

from tests.factories import SubscriptionFactory

BASE = "/api/organizations/org-1"


class TestEntitlementChecks:
    """Integration tests for the read endpoints."""

    @pytest.mark.asyncio
    async def test_summary(self, client: AsyncClient, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        response = await client.get(f"{BASE}/entitlements")

        assert response.status_code == 200
        data = response.json()
        assert data["plan_id"] == "pro"
        assert data["is_active"] is True
        assert "full_statistics" in data["features"]
        assert data["limits"]["team_members"] == 10
        assert data["exceeded"] == []

    @pytest.mark.asyncio
    async def test_summary_without_subscription(self, client: AsyncClient):
        response = await client.get("/api/organizations/org-none/entitlements")

        assert response.status_code == 200
        data = response.json()
        assert data["plan_id"] is None
        assert data["limits"]["team_members"] == 3

    @pytest.mark.asyncio
    async def test_feature_check(self, client: AsyncClient, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        allowed = await client.get(f"{BASE}/entitlements/features/full_statistics")
        denied = await client.get(f"{BASE}/entitlements/features/api_access")

        assert allowed.status_code == 200
        assert allowed.json()["allowed"] is True
        assert denied.status_code == 200
        assert denied.json()["allowed"] is False
        assert denied.json()["reason"] == "Feature api_access is not available in Pro plan"

    @pytest.mark.asyncio
    async def test_usage_check(self, client: AsyncClient, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        within = await client.get(f"{BASE}/entitlements/usage/team_members", params={"amount": 10})
        over = await client.get(f"{BASE}/entitlements/usage/team_members", params={"amount": 11})

        assert within.json()["allowed"] is True
        assert over.json()["allowed"] is False
        assert over.json()["limit"] == 10
        assert over.json()["requested_amount"] == 11

    @pytest.mark.asyncio
    async def test_usage_check_requires_amount(self, client: AsyncClient):
        response = await client.get(f"{BASE}/entitlements/usage/team_members")

        assert response.status_code == 400


class TestUsageWrites:
    """Integration tests for usage counters."""

    @pytest.mark.asyncio
    async def test_set_usage(self, client: AsyncClient, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="pro")

        response = await client.put(f"{BASE}/usage/teamMembers", json={"value": 4})

        assert response.status_code == 200
        assert response.json()["metric"] == "team_members"
        assert response.json()["value"] == 4
        summary = await client.get(f"{BASE}/entitlements")
        assert summary.json()["usage"]["team_members"] == 4

    @pytest.mark.asyncio
    async def test_set_unknown_metric(self, client: AsyncClient, session_factory):
        await SubscriptionFactory.create(session_factory)

        response = await client.put(f"{BASE}/usage/storage_gb", json={"value": 1})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_set_usage_without_subscription(self, client: AsyncClient):
        response = await client.put("/api/organizations/org-none/usage/team_members", json={"value": 1})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_increment_api_requests(self, client: AsyncClient, session_factory):
        await SubscriptionFactory.create(session_factory, plan_id="enterprise")

        first = await client.post(f"{BASE}/usage/api-requests/increment", json={})
        second = await client.post(f"{BASE}/usage/api-requests/increment", json={"delta": 5})

        assert first.json()["value"] == 1
        assert second.json()["value"] == 6
        assert second.json()["metric"] == "api_requests"
