"""
API tests for organization match endpoints and match actions.
"""
import uuid

import pytest
from httpx import AsyncClient

from backend.models import PlanTier

pytestmark = pytest.mark.integration


async def _generate(client: AsyncClient, organization_id) -> dict:
    response = await client.post(f"/api/organizations/{organization_id}/matches/generate")
    assert response.status_code == 200, response.text
    return response.json()


class TestGenerateMatches:
    """Tests for POST /api/organizations/{id}/matches/generate."""

    @pytest.mark.asyncio
    async def test_generate(self, client, make_organization, make_announcement):
        organization = make_organization()
        announcement = make_announcement()

        data = await _generate(client, organization.id)

        assert data["state"] == "DONE"
        assert data["session_id"] is not None
        assert len(data["matches"]) == 1
        match = data["matches"][0]
        assert match["announcement_id"] == str(announcement.id)
        assert match["rank_position"] == 1
        assert 0 <= match["score"] <= 100
        assert match["explanation"]["source"] == "TEMPLATE"
        assert data["quota"]["plan"] == "FREE"
        assert data["quota"]["used"] == 1
        assert data["quota"]["remaining"] == 2

    @pytest.mark.asyncio
    async def test_quota_exceeded_returns_429(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        for _ in range(3):
            await _generate(client, organization.id)

        response = await client.post(f"/api/organizations/{organization.id}/matches/generate")

        assert response.status_code == 429
        body = response.json()
        assert body["error"] is True
        assert body["message"]["error"] == "QUOTA_EXCEEDED"
        assert body["message"]["remaining"] == 0
        assert "reset_at" in body["message"]

    @pytest.mark.asyncio
    async def test_paid_plan_is_not_limited(self, client, make_organization, make_announcement, make_subscription):
        organization = make_organization()
        make_subscription(organization.id, plan=PlanTier.PRO)
        make_announcement()

        for _ in range(4):
            data = await _generate(client, organization.id)

        assert data["quota"]["limit"] is None
        assert data["quota"]["used"] == 4

    @pytest.mark.asyncio
    async def test_no_candidates(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement(target_types=["UNIVERSITY"])

        data = await _generate(client, organization.id)

        assert data["state"] == "NO_CANDIDATES"
        assert data["matches"] == []
        assert data["quota"]["used"] == 0

    @pytest.mark.asyncio
    async def test_unknown_organization(self, client):
        response = await client.post(f"/api/organizations/{uuid.uuid4()}/matches/generate")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_organization_id(self, client):
        response = await client.post("/api/organizations/not-a-uuid/matches/generate")

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request"


class TestListMatches:
    """Tests for GET /api/organizations/{id}/matches."""

    @pytest.mark.asyncio
    async def test_list_after_generation(self, client, make_organization, make_announcement):
        organization = make_organization()
        for _ in range(3):
            make_announcement()
        await _generate(client, organization.id)

        first = await client.get(f"/api/organizations/{organization.id}/matches")
        second = await client.get(f"/api/organizations/{organization.id}/matches", params={"limit": 2})

        assert first.status_code == 200
        assert first.json()["total"] == 3
        assert first.json()["cached"] is False
        assert [m["rank_position"] for m in first.json()["matches"]] == [1, 2, 3]
        assert second.json()["cached"] is True
        assert second.json()["total"] == 2
        assert second.json()["quota"]["used"] == 1

    @pytest.mark.asyncio
    async def test_generation_refreshes_cached_list(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        await client.get(f"/api/organizations/{organization.id}/matches")

        await _generate(client, organization.id)
        response = await client.get(f"/api/organizations/{organization.id}/matches")

        assert response.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_cached_list_reflects_save_and_view(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        match_id = (await _generate(client, organization.id))["matches"][0]["id"]
        await client.get(f"/api/organizations/{organization.id}/matches")

        await client.post(f"/api/matches/{match_id}/save")
        await client.post(f"/api/matches/{match_id}/view")
        response = await client.get(f"/api/organizations/{organization.id}/matches")

        listed = response.json()["matches"][0]
        assert listed["saved"] is True
        assert listed["viewed"] is True

    @pytest.mark.asyncio
    async def test_limit_out_of_range(self, client, make_organization):
        organization = make_organization()

        response = await client.get(f"/api/organizations/{organization.id}/matches", params={"limit": 0})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_organization(self, client):
        response = await client.get(f"/api/organizations/{uuid.uuid4()}/matches")
        assert response.status_code == 404


class TestUpdateProfile:
    """Tests for PATCH /api/organizations/{id}/profile."""

    @pytest.mark.asyncio
    async def test_material_update(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        await _generate(client, organization.id)

        response = await client.patch(
            f"/api/organizations/{organization.id}/profile",
            json={"industry_sector": "BIO"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["changed_fields"] == ["industry_sector"]
        assert data["material_change"] is True
        assert data["matches_removed"] == 1
        assert data["cache_invalidated"] is True
        assert data["profile"]["industry_sector"] == "BIO"

        listed = await client.get(f"/api/organizations/{organization.id}/matches")
        assert listed.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_float_trl_is_rejected(self, client, make_organization):
        organization = make_organization()

        response = await client.patch(
            f"/api/organizations/{organization.id}/profile",
            json={"technology_readiness_level": 6.5},
        )

        assert response.status_code == 400
        assert any(e["field"] == "technology_readiness_level" for e in response.json()["errors"])

    @pytest.mark.asyncio
    async def test_null_required_field_is_rejected(self, client, make_organization):
        organization = make_organization()

        response = await client.patch(
            f"/api/organizations/{organization.id}/profile",
            json={"type": None},
        )

        assert response.status_code == 400
        assert any(e["field"] == "type" for e in response.json()["errors"])

    @pytest.mark.asyncio
    async def test_unknown_organization(self, client):
        response = await client.patch(f"/api/organizations/{uuid.uuid4()}/profile", json={"name": "x"})
        assert response.status_code == 404


class TestMatchActions:
    """Tests for /api/matches/{id}/..."""

    @pytest.mark.asyncio
    async def test_explanation_falls_back_without_provider(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        match_id = (await _generate(client, organization.id))["matches"][0]["id"]

        response = await client.get(f"/api/matches/{match_id}/explanation")

        assert response.status_code == 200
        data = response.json()
        assert data["match_id"] == match_id
        assert data["cached"] is False
        assert data["explanation"]["source"] == "TEMPLATE"
        assert data["explanation"]["fallback_reason"] == "NOT_CONFIGURED"

    @pytest.mark.asyncio
    async def test_save_and_view(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        match_id = (await _generate(client, organization.id))["matches"][0]["id"]

        saved = await client.post(f"/api/matches/{match_id}/save")
        viewed = await client.post(f"/api/matches/{match_id}/view")
        unsaved = await client.post(f"/api/matches/{match_id}/save", json={"saved": False})

        assert saved.status_code == 200
        assert saved.json()["saved"] is True
        assert viewed.json()["viewed"] is True
        assert unsaved.json()["saved"] is False
        assert unsaved.json()["viewed"] is True

    @pytest.mark.asyncio
    async def test_saved_match_survives_regeneration(self, client, make_organization, make_announcement):
        organization = make_organization()
        make_announcement()
        match_id = (await _generate(client, organization.id))["matches"][0]["id"]
        await client.post(f"/api/matches/{match_id}/save")

        data = await _generate(client, organization.id)

        assert data["matches"][0]["id"] == match_id
        assert data["matches"][0]["saved"] is True

    @pytest.mark.asyncio
    async def test_unknown_match(self, client):
        missing = uuid.uuid4()

        assert (await client.get(f"/api/matches/{missing}/explanation")).status_code == 404
        assert (await client.post(f"/api/matches/{missing}/save")).status_code == 404
        assert (await client.post(f"/api/matches/{missing}/view")).status_code == 404
