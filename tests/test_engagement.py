"""
Tests for save/view engagement and save attribution.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from backend.core.exceptions import CacheUnavailableError, NotFoundError
from backend.models import AttributedSave, GenerationSession, Match, Organization
from backend.services.cache import CacheStore
from engine.cache.keys import org_matches_key
from engine.matching.engagement import EngagementService

NOW = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)


@pytest.fixture
def ranked_match(db_session, make_organization, make_announcement):
    """A match ranked 4th by a generation session one day old."""
    organization = make_organization()
    announcement = make_announcement()
    generation = GenerationSession(
        id=uuid.uuid4(),
        organization_id=organization.id,
        generated_count=10,
        config_name="v1.0-aaaa0000",
        created_at=NOW - timedelta(days=1),
    )
    db_session.add(generation)
    db_session.flush()
    match = Match(
        organization_id=organization.id,
        announcement_id=announcement.id,
        score=75,
        confidence="HIGH",
        config_name="v1.0-aaaa0000",
        session_id=generation.id,
        rank_position=4,
    )
    db_session.add(match)
    db_session.commit()
    return match


def _attributed(db_session) -> list[AttributedSave]:
    return list(db_session.execute(select(AttributedSave)).scalars())


class TestSave:
    def test_save_is_attributed_to_session(self, db_session, ranked_match):
        service = EngagementService(db_session, attribution_window_days=7, clock=lambda: NOW)

        view = service.set_saved(ranked_match.id)

        assert view.saved is True
        saves = _attributed(db_session)
        assert len(saves) == 1
        assert saves[0].session_id == ranked_match.session_id
        assert saves[0].position == 4
        assert saves[0].saved_at == NOW

    def test_save_outside_window_is_not_attributed(self, db_session, ranked_match):
        later = NOW + timedelta(days=10)
        service = EngagementService(db_session, attribution_window_days=7, clock=lambda: later)

        view = service.set_saved(ranked_match.id)

        assert view.saved is True
        assert _attributed(db_session) == []

    def test_resave_is_attributed_once(self, db_session, ranked_match):
        service = EngagementService(db_session, attribution_window_days=7, clock=lambda: NOW)

        service.set_saved(ranked_match.id)
        service.set_saved(ranked_match.id, saved=False)
        service.set_saved(ranked_match.id)

        assert len(_attributed(db_session)) == 1

    def test_unsave(self, db_session, ranked_match):
        service = EngagementService(db_session, clock=lambda: NOW)
        service.set_saved(ranked_match.id)

        view = service.set_saved(ranked_match.id, saved=False)

        assert view.saved is False

    def test_save_marks_organization_active(self, db_session, ranked_match):
        service = EngagementService(db_session, clock=lambda: NOW)

        service.set_saved(ranked_match.id)

        last_active = db_session.execute(
            select(Organization.last_active_at).where(Organization.id == ranked_match.organization_id)
        ).scalar_one()
        assert last_active == NOW

    def test_unknown_match(self, db_session):
        with pytest.raises(NotFoundError):
            EngagementService(db_session).set_saved(uuid.uuid4())


class TestView:
    def test_mark_viewed(self, db_session, ranked_match):
        service = EngagementService(db_session, clock=lambda: NOW)

        view = service.mark_viewed(ranked_match.id)

        assert view.viewed is True
        assert view.saved is False
        assert _attributed(db_session) == []

    def test_unknown_match(self, db_session):
        with pytest.raises(NotFoundError):
            EngagementService(db_session).mark_viewed(uuid.uuid4())


class TestMatchListEviction:
    """Engagement changes drop the cached match list so the next read sees them."""

    @pytest.mark.parametrize("action", ["save", "unsave", "view"])
    def test_engagement_evicts_cached_list(self, db_session, cache_store, ranked_match, action):
        service = EngagementService(db_session, clock=lambda: NOW, cache=cache_store)
        key = org_matches_key(ranked_match.organization_id)
        cache_store.set(key, "[]")

        if action == "view":
            service.mark_viewed(ranked_match.id)
        else:
            service.set_saved(ranked_match.id, saved=action == "save")

        assert cache_store.get(key) is None

    def test_cache_outage_does_not_fail_save(self, db_session, ranked_match):
        cache = MagicMock(spec=CacheStore)
        cache.delete.side_effect = CacheUnavailableError("cache delete failed")
        service = EngagementService(db_session, clock=lambda: NOW, cache=cache)

        view = service.set_saved(ranked_match.id)

        assert view.saved is True
        cache.delete.assert_called_once_with(org_matches_key(ranked_match.organization_id))
