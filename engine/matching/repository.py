"""
Matching Engine Data Access
Collaborator contracts (Protocols) and their SQLAlchemy implementations.
"""
import uuid
from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import Any, Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.exceptions import StorageFailureError
from backend.models import (
    Announcement,
    AnnouncementStatus,
    AnnouncementType,
    GenerationSession,
    Match,
    Organization,
    PlanTier,
    Subscription,
)

from .models import (
    AnnouncementData,
    MatchExplanation,
    MatchView,
    OrganizationProfile,
    ScoredCandidate,
)

logger = structlog.get_logger().bind(component="match_repository")


# =============================================================================
# Collaborator contracts
# =============================================================================


class OrganizationStore(Protocol):
    def get_profile(self, organization_id: UUID) -> Optional[OrganizationProfile]: ...

    def get_updated_at(self, organization_id: UUID) -> Optional[datetime]: ...

    def list_active_since(self, since: datetime, limit: int) -> list[UUID]: ...


class AnnouncementCatalog(Protocol):
    def list_announcements(
        self,
        status: Optional[AnnouncementStatus] = None,
        types: Optional[Iterable[AnnouncementType]] = None,
        category: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AnnouncementData]: ...

    def iter_announcements(
        self,
        status: Optional[AnnouncementStatus] = None,
        types: Optional[Iterable[AnnouncementType]] = None,
        category: Optional[str] = None,
        page_size: int = 500,
    ) -> Iterator[AnnouncementData]: ...

    def get(self, announcement_id: UUID) -> Optional[AnnouncementData]: ...


class PlanStore(Protocol):
    def get_plan(self, organization_id: UUID) -> tuple[PlanTier, Optional[int]]: ...


class MatchStore(Protocol):
    def persist_generation(
        self,
        organization_id: UUID,
        ranked: list[ScoredCandidate],
        explanations: dict[UUID, MatchExplanation],
        config_name: str,
        now: datetime,
    ) -> tuple[UUID, list[MatchView]]: ...

    def list_for_organization(self, organization_id: UUID, limit: Optional[int] = None) -> list[MatchView]: ...


# =============================================================================
# SQLAlchemy implementations
# =============================================================================


class SqlOrganizationStore:
    """Organization profiles backed by the ``organizations`` table."""

    def __init__(self, session: Session):
        self.session = session

    def get_profile(self, organization_id: UUID) -> Optional[OrganizationProfile]:
        row = self.session.get(Organization, organization_id)
        if row is None:
            return None
        return OrganizationProfile.model_validate(row)

    def get_updated_at(self, organization_id: UUID) -> Optional[datetime]:
        return self.session.execute(
            select(Organization.updated_at).where(Organization.id == organization_id)
        ).scalar_one_or_none()

    def list_active_since(self, since: datetime, limit: int) -> list[UUID]:
        """Organizations with activity at or after ``since``, most recent first."""
        rows = self.session.execute(
            select(Organization.id)
            .where(Organization.last_active_at.is_not(None))
            .where(Organization.last_active_at >= since)
            .order_by(Organization.last_active_at.desc(), Organization.id)
            .limit(limit)
        ).scalars()
        return list(rows)


class SqlAnnouncementCatalog:
    """Read access to the announcement catalog plus the reclassify override."""

    def __init__(self, session: Session):
        self.session = session

    def _query(
        self,
        status: Optional[AnnouncementStatus],
        types: Optional[Iterable[AnnouncementType]],
        category: Optional[str],
    ):
        query = select(Announcement)
        if status is not None:
            query = query.where(Announcement.status == status)
        if types is not None:
            query = query.where(Announcement.announcement_type.in_(list(types)))
        if category is not None:
            query = query.where(Announcement.category == category)
        return query.order_by(Announcement.id)

    def list_announcements(
        self,
        status: Optional[AnnouncementStatus] = None,
        types: Optional[Iterable[AnnouncementType]] = None,
        category: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AnnouncementData]:
        rows = self.session.execute(
            self._query(status, types, category).limit(limit).offset(offset)
        ).scalars()
        return [AnnouncementData.model_validate(row) for row in rows]

    def iter_announcements(
        self,
        status: Optional[AnnouncementStatus] = None,
        types: Optional[Iterable[AnnouncementType]] = None,
        category: Optional[str] = None,
        page_size: int = 500,
    ) -> Iterator[AnnouncementData]:
        types = list(types) if types is not None else None
        offset = 0
        while True:
            page = self.list_announcements(status, types, category, limit=page_size, offset=offset)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def get(self, announcement_id: UUID) -> Optional[AnnouncementData]:
        row = self.session.get(Announcement, announcement_id, populate_existing=True)
        return AnnouncementData.model_validate(row) if row is not None else None

    def reclassify(
        self,
        announcement_id: UUID,
        new_type: AnnouncementType,
        new_category: Optional[str],
        now: datetime,
    ) -> Optional[tuple[AnnouncementData, AnnouncementData]]:
        """
        Override the classification of an announcement.

        Returns:
            (before, after) snapshots, or None if the announcement does not exist.
        """
        row = self.session.get(Announcement, announcement_id)
        if row is None:
            return None
        before = AnnouncementData.model_validate(row)
        row.announcement_type = new_type
        if new_category is not None:
            row.category = new_category
        row.updated_at = now
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageFailureError() from e
        return before, AnnouncementData.model_validate(row)


class SqlPlanStore:
    """Plan tier exposed by the subscriptions table. No row means FREE."""

    def __init__(self, session: Session):
        self.session = session

    def get_plan(self, organization_id: UUID) -> tuple[PlanTier, Optional[int]]:
        row = self.session.execute(
            select(Subscription.plan, Subscription.seat_limit).where(
                Subscription.organization_id == organization_id
            )
        ).one_or_none()
        if row is None:
            return PlanTier.FREE, None
        return row.plan, row.seat_limit


def match_to_view(match: Match, announcement: Optional[Announcement]) -> MatchView:
    explanation = MatchExplanation.model_validate(match.explanation) if match.explanation else None
    return MatchView(
        id=match.id,
        organization_id=match.organization_id,
        announcement_id=match.announcement_id,
        title=announcement.title if announcement is not None else "",
        score=match.score,
        bonus=match.bonus,
        breakdown=match.breakdown or {},
        reason_codes=match.reason_codes or [],
        confidence=match.confidence,
        explanation=explanation,
        config_name=match.config_name,
        rank_position=match.rank_position,
        deadline=announcement.deadline if announcement is not None else None,
        saved=match.saved,
        viewed=match.viewed,
    )


class SqlMatchStore:
    """
    Match persistence.

    Generation results are written with a dialect-level upsert keyed on
    (organization_id, announcement_id). The update set never includes
    ``saved``/``viewed``, so engagement state survives re-scoring even
    under concurrent writers.
    """

    # Columns overwritten when a pair is re-scored
    RESCORED_COLUMNS = (
        "score",
        "bonus",
        "breakdown",
        "reason_codes",
        "confidence",
        "explanation",
        "config_name",
        "session_id",
        "rank_position",
        "updated_at",
    )

    def __init__(self, session: Session):
        self.session = session

    def _insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(Match)
        if dialect == "sqlite":
            return sqlite_insert(Match)
        raise NotImplementedError(f"match upsert not supported on {dialect}")

    def _upsert_rows(self, rows: list[dict[str, Any]]) -> None:
        stmt = self._insert().values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Match.organization_id, Match.announcement_id],
            set_={column: getattr(stmt.excluded, column) for column in self.RESCORED_COLUMNS},
        )
        self.session.execute(stmt)

    def persist_generation(
        self,
        organization_id: UUID,
        ranked: list[ScoredCandidate],
        explanations: dict[UUID, MatchExplanation],
        config_name: str,
        now: datetime,
    ) -> tuple[UUID, list[MatchView]]:
        """
        Persist one generation: a session row plus the ranked matches.

        Matches from earlier generations that did not make this ranking keep
        their row but lose their rank position.

        Raises:
            StorageFailureError: On any database error. Nothing is committed.
        """
        try:
            generation = GenerationSession(
                id=uuid.uuid4(),
                organization_id=organization_id,
                generated_count=len(ranked),
                config_name=config_name,
                is_cached=False,
                created_at=now,
            )
            self.session.add(generation)
            self.session.flush()

            rows = []
            for position, candidate in enumerate(ranked, start=1):
                announcement_id = candidate.announcement.id
                explanation = explanations.get(announcement_id)
                rows.append({
                    "id": uuid.uuid4(),
                    "organization_id": organization_id,
                    "announcement_id": announcement_id,
                    "score": candidate.result.score,
                    "bonus": candidate.result.bonus,
                    "breakdown": candidate.result.breakdown,
                    "reason_codes": [code.value for code in candidate.result.reason_codes],
                    "confidence": candidate.result.confidence.value,
                    "explanation": explanation.model_dump(mode="json") if explanation else {},
                    "config_name": config_name,
                    "session_id": generation.id,
                    "rank_position": position,
                    "saved": False,
                    "viewed": False,
                    "created_at": now,
                    "updated_at": now,
                })

            superseded = update(Match).where(Match.organization_id == organization_id)
            if rows:
                superseded = superseded.where(
                    Match.announcement_id.not_in([row["announcement_id"] for row in rows])
                )
            self.session.execute(superseded.values(rank_position=None))
            if rows:
                self._upsert_rows(rows)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "match_persist_failed",
                organization_id=str(organization_id),
                error=str(e),
            )
            raise StorageFailureError() from e

        return generation.id, self.list_for_organization(organization_id)

    def list_for_organization(self, organization_id: UUID, limit: Optional[int] = None) -> list[MatchView]:
        """Currently ranked matches for an organization, in rank order."""
        query = (
            select(Match, Announcement)
            .join(Announcement, Announcement.id == Match.announcement_id)
            .where(Match.organization_id == organization_id)
            .where(Match.rank_position.is_not(None))
            .where(Announcement.announcement_type == AnnouncementType.R_D_PROJECT)
            .order_by(Match.rank_position)
            .execution_options(populate_existing=True)
        )
        if limit is not None:
            query = query.limit(limit)
        return [match_to_view(match, announcement) for match, announcement in self.session.execute(query)]

    def get(self, match_id: UUID) -> Optional[Match]:
        return self.session.get(Match, match_id, populate_existing=True)

    def get_view(self, match_id: UUID) -> Optional[MatchView]:
        match = self.get(match_id)
        if match is None:
            return None
        return match_to_view(match, self.session.get(Announcement, match.announcement_id))

    def update_explanation(self, match_id: UUID, explanation: MatchExplanation) -> None:
        try:
            self.session.execute(
                update(Match)
                .where(Match.id == match_id)
                .values(explanation=explanation.model_dump(mode="json"))
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _delete_unsaved(self, condition) -> int:
        try:
            result = self.session.execute(delete(Match).where(condition).where(Match.saved.is_(False)))
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageFailureError() from e
        return result.rowcount or 0

    def delete_unsaved_for_announcement(self, announcement_id: UUID) -> int:
        return self._delete_unsaved(Match.announcement_id == announcement_id)

    def delete_unsaved_for_organization(self, organization_id: UUID) -> int:
        return self._delete_unsaved(Match.organization_id == organization_id)
