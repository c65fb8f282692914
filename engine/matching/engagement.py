"""
Engagement events on matches: save/view toggles and save attribution.

A save is credited to the generation session that last ranked the match,
at the rank position shown, as long as it happens within the attribution
window. Attributed saves are written once and never changed.
"""
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError, NotFoundError, StorageFailureError
from backend.models import Announcement, AttributedSave, GenerationSession, Match, Organization
from backend.services.cache import CacheStore
from backend.utils.business_calendar import utcnow
from engine.cache import keys

from .models import MatchView
from .repository import match_to_view

logger = structlog.get_logger().bind(component="engagement")


class EngagementService:
    """Applies save/view toggles and records attributed saves."""

    def __init__(
        self,
        session: Session,
        attribution_window_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        cache: Optional[CacheStore] = None,
    ):
        self.session = session
        self.cache = cache
        self.attribution_window = timedelta(
            days=attribution_window_days
            if attribution_window_days is not None
            else settings.attribution_window_days
        )
        self.clock = clock

    def _get_match(self, match_id: UUID) -> Match:
        match = self.session.get(Match, match_id, populate_existing=True)
        if match is None:
            raise NotFoundError("Match", str(match_id))
        return match

    def _attribute(self, match: Match, now: datetime) -> Optional[AttributedSave]:
        if match.session_id is None or match.rank_position is None:
            return None
        generation = self.session.get(GenerationSession, match.session_id)
        if generation is None or now - generation.created_at > self.attribution_window:
            return None

        existing = self.session.execute(
            select(AttributedSave.id)
            .where(AttributedSave.session_id == generation.id)
            .where(AttributedSave.announcement_id == match.announcement_id)
        ).scalar_one_or_none()
        if existing is not None:
            return None

        save = AttributedSave(
            session_id=generation.id,
            announcement_id=match.announcement_id,
            position=match.rank_position,
            saved_at=now,
        )
        self.session.add(save)
        return save

    def _touch_organization(self, organization_id: UUID, now: datetime) -> None:
        self.session.execute(
            update(Organization)
            .where(Organization.id == organization_id)
            .values(last_active_at=now)
        )

    def _evict_match_list(self, organization_id: UUID) -> None:
        """The cached match list carries saved/viewed flags."""
        if self.cache is None:
            return
        try:
            self.cache.delete(keys.org_matches_key(organization_id))
        except CacheUnavailableError as e:
            logger.warning(
                "match_list_cache_evict_failed",
                organization_id=str(organization_id),
                error=str(e),
            )

    def _commit(self, match: Match) -> MatchView:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("engagement_persist_failed", match_id=str(match.id), error=str(e))
            raise StorageFailureError() from e
        self._evict_match_list(match.organization_id)
        return match_to_view(match, self.session.get(Announcement, match.announcement_id))

    def set_saved(self, match_id: UUID, saved: bool = True) -> MatchView:
        """Save or unsave a match. Only a False -> True transition can be attributed."""
        now = self.clock()
        match = self._get_match(match_id)
        attributed = None
        if saved and not match.saved:
            attributed = self._attribute(match, now)
        match.saved = saved
        match.updated_at = now
        self._touch_organization(match.organization_id, now)
        view = self._commit(match)
        logger.info(
            "match_saved" if saved else "match_unsaved",
            match_id=str(match_id),
            attributed=attributed is not None,
        )
        return view

    def mark_viewed(self, match_id: UUID) -> MatchView:
        now = self.clock()
        match = self._get_match(match_id)
        if not match.viewed:
            match.viewed = True
            match.updated_at = now
        self._touch_organization(match.organization_id, now)
        return self._commit(match)
