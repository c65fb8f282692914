"""
API tests for admin endpoints and health checks.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from backend.core.config import settings
from engine.cache import keys

pytestmark = pytest.mark.integration


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_key_is_rejected_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", "s3cret")

        response = await client.post(f"/api/admin/cache/organizations/{uuid.uuid4()}/invalidate")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_key_is_accepted(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", "s3cret")

        response = await client.post(
            f"/api/admin/cache/organizations/{uuid.uuid4()}/invalidate",
            headers={"X-Admin-Key": "s3cret"},
        )

        assert response.status_code == 200


class TestCacheInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_organization(self, client, cache_store):
        organization_id = uuid.uuid4()
        cache_store.set(keys.org_matches_key(organization_id), "[]")
        cache_store.set(keys.org_profile_key(organization_id), "{}")

        response = await client.post(f"/api/admin/cache/organizations/{organization_id}/invalidate")

        assert response.status_code == 200
        data = response.json()
        assert data["scope"] == "organization"
        assert data["completed"] is True
        assert data["keys_deleted"] == 2
        assert cache_store.get(keys.org_matches_key(organization_id)) is None

    @pytest.mark.asyncio
    async def test_invalidate_announcement(self, client, cache_store):
        announcement_id = uuid.uuid4()
        cache_store.set(keys.programs_key(), "[]")

        response = await client.post(f"/api/admin/cache/announcements/{announcement_id}/invalidate")

        assert response.status_code == 200
        assert response.json()["scope"] == "announcement"
        assert cache_store.get(keys.programs_key()) is None


class TestReclassify:
    @pytest.mark.asyncio
    async def test_reclassify_removes_unsaved_matches(self, client, make_organization, make_announcement):
        organization = make_organization()
        announcement = make_announcement()
        generated = await client.post(f"/api/organizations/{organization.id}/matches/generate")
        assert len(generated.json()["matches"]) == 1

        response = await client.post(
            f"/api/admin/announcements/{announcement.id}/reclassify",
            json={"announcement_type": "EVENT"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["previous_type"] == "R_D_PROJECT"
        assert data["new_type"] == "EVENT"
        assert data["matches_removed"] == 1
        assert data["invalidation"]["completed"] is True

        listed = await client.get(f"/api/organizations/{organization.id}/matches")
        assert listed.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_unknown_announcement(self, client):
        response = await client.post(
            f"/api/admin/announcements/{uuid.uuid4()}/reclassify",
            json={"announcement_type": "SURVEY"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_type(self, client):
        response = await client.post(
            f"/api/admin/announcements/{uuid.uuid4()}/reclassify",
            json={"announcement_type": "GRANT"},
        )
        assert response.status_code == 400


class TestCacheWarming:
    @pytest.mark.asyncio
    async def test_inline_programs_warming(self, client, cache_store, make_announcement):
        make_announcement()

        response = await client.post("/api/admin/cache/warm", json={"strategy": "programs"})

        assert response.status_code == 200
        assert response.json()["strategy"] == "programs"
        assert response.json()["items_warmed"] == 1
        assert cache_store.get(keys.programs_key()) is not None

    @pytest.mark.asyncio
    async def test_inline_organization_warming(self, client, cache_store, make_organization):
        organization = make_organization()

        response = await client.post(
            "/api/admin/cache/warm",
            json={"strategy": "organization", "params": {"organization_id": str(organization.id)}},
        )

        assert response.status_code == 200
        assert response.json()["organizations"] == 1
        assert cache_store.get(keys.org_profile_key(organization.id)) is not None

    @pytest.mark.asyncio
    async def test_async_warming_is_queued(self, client, monkeypatch):
        from backend.tasks import cache_warming

        delay = MagicMock(return_value=MagicMock(id="task-123"))
        monkeypatch.setattr(cache_warming.warm_cache, "delay", delay)

        response = await client.post("/api/admin/cache/warm", json={"strategy": "full", "run_async": True})

        assert response.status_code == 200
        assert response.json() == {"task_id": "task-123", "strategy": "full"}
        assert delay.call_args.args[0] == "full"

    @pytest.mark.asyncio
    async def test_invalid_strategy(self, client):
        response = await client.post("/api/admin/cache/warm", json={"strategy": "everything"})
        assert response.status_code == 400


class TestRankingMetrics:
    @pytest.mark.asyncio
    async def test_metrics_after_save(self, client, make_organization, make_announcement, make_subscription):
        organization = make_organization()
        make_subscription(organization.id)
        for _ in range(3):
            make_announcement()
        generated = await client.post(f"/api/organizations/{organization.id}/matches/generate")
        top_match = generated.json()["matches"][0]["id"]
        await client.post(f"/api/matches/{top_match}/save")

        now = datetime.now(timezone.utc)
        response = await client.get(
            "/api/admin/metrics/ranking",
            params={
                "window_start": (now - timedelta(days=1)).isoformat(),
                "window_end": (now + timedelta(days=1)).isoformat(),
                "min_sample_size": 1,
                "persist": True,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_sessions"] == 1
        assert data["hit_rate_at_10"]["value"] == 1.0
        assert data["precision_at_5"]["value"] == pytest.approx(1 / 3)
        assert data["ndcg_at_10"]["value"] == pytest.approx(1.0)
        assert data["precision_at_10"]["is_sufficient"] is True

    @pytest.mark.asyncio
    async def test_default_window(self, client):
        response = await client.get("/api/admin/metrics/ranking")

        assert response.status_code == 200
        assert response.json()["total_sessions"] == 0
        assert response.json()["precision_at_5"]["value"] is None

    @pytest.mark.asyncio
    async def test_inverted_window(self, client):
        response = await client.get(
            "/api/admin/metrics/ranking",
            params={"window_start": "2026-03-09T00:00:00", "window_end": "2026-03-02T00:00:00"},
        )
        assert response.status_code == 400


class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_readiness(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["components"]["database"]["status"] == "healthy"
        assert data["components"]["cache"]["status"] == "healthy"
        assert data["status"] in ("healthy", "degraded")
