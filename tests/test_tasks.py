"""
Tests for the Celery cache and ranking metrics tasks, called in-process.
"""
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from backend.models import AttributedSave, GenerationSession, RankingMetricSnapshot
from backend.tasks import cache_warming, ranking_metrics
from engine.cache import keys


@pytest.fixture
def worker_session(monkeypatch, session_factory):
    @contextmanager
    def _session():
        session = session_factory()
        try:
            yield session
            session.commit()
        finally:
            session.close()

    monkeypatch.setattr(cache_warming, "get_sync_session", _session)
    monkeypatch.setattr(ranking_metrics, "get_sync_session", _session)


@pytest.fixture
def worker_cache(monkeypatch, cache_store):
    monkeypatch.setattr(cache_warming, "get_cache_store", lambda: cache_store)
    monkeypatch.setattr(cache_warming, "get_explanation_provider", lambda: None)
    return cache_store


class TestCacheTasks:
    def test_warm_programs(self, worker_session, worker_cache, make_announcement):
        make_announcement()
        make_announcement()

        result = cache_warming.warm_cache("programs")

        assert result["strategy"] == "programs"
        assert result["items_warmed"] == 2
        assert worker_cache.get(keys.programs_key()) is not None

    def test_warm_organization_with_params(self, worker_session, worker_cache, make_organization):
        organization = make_organization()

        result = cache_warming.warm_cache("organization", {"organization_id": str(organization.id)})

        assert result["organizations"] == 1
        assert worker_cache.get(keys.org_profile_key(organization.id)) is not None

    def test_unknown_strategy(self, worker_session, worker_cache):
        with pytest.raises(ValueError):
            cache_warming.warm_cache("everything")

    def test_invalidate_organization(self, worker_cache):
        organization_id = uuid.uuid4()
        worker_cache.set(keys.org_matches_key(organization_id), "[]")

        result = cache_warming.invalidate_organization_cache(str(organization_id))

        assert result["completed"] is True
        assert result["keys_deleted"] == 1

    def test_invalidate_announcement(self, worker_cache):
        worker_cache.set(keys.programs_key(), "[]")

        result = cache_warming.invalidate_announcement_cache(str(uuid.uuid4()))

        assert result["scope"] == "announcement"
        assert worker_cache.get(keys.programs_key()) is None


class TestRankingMetricsTask:
    def test_compute_and_persist(self, db_session, worker_session, make_organization):
        organization = make_organization()
        generation = GenerationSession(
            id=uuid.uuid4(),
            organization_id=organization.id,
            generated_count=10,
            config_name="v1.0-aaaa0000",
            created_at=datetime(2026, 3, 5, 1, 0, tzinfo=timezone.utc),
        )
        db_session.add(generation)
        db_session.flush()
        db_session.add(AttributedSave(
            session_id=generation.id,
            announcement_id=uuid.uuid4(),
            position=2,
            saved_at=generation.created_at + timedelta(hours=1),
        ))
        db_session.commit()

        result = ranking_metrics.compute_ranking_metrics(window_end="2026-03-10T03:00:00+00:00")

        assert result["total_sessions"] == 1
        assert result["hit_rate_at_10"]["value"] == 1.0
        assert result["precision_at_10"]["value"] == pytest.approx(0.1)
        assert result["window_end"].startswith("2026-03-09T15:00:00")

        snapshots = db_session.execute(
            select(func.count()).select_from(RankingMetricSnapshot)
        ).scalar_one()
        assert snapshots == 1
