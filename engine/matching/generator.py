"""
Match Generation Orchestrator
Runs one generation for an organization:

QUOTA_CHECK -> FETCH_CANDIDATES -> FILTER -> SCORE_ALL -> RANK_TOP_K
-> PERSIST -> QUOTA_INCREMENT -> DONE

QUOTA_EXCEEDED and NO_CANDIDATES end a run early. Quota is only charged once
results are durable; any failure or cancellation before that releases the
reservation.
"""
import time
from collections.abc import Callable
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError, OrganizationNotFoundError
from backend.models import AnnouncementStatus
from backend.services.cache import CacheStore
from backend.utils.business_calendar import utcnow
from engine.cache import keys
from engine.explanation.fallback import build_template_explanation

from .eligibility import deduplicate_announcements, filter_eligible
from .models import (
    GenerationResult,
    GenerationState,
    MatchExplanation,
    ScoredCandidate,
    ScoringConfig,
    default_scoring_config,
)
from .quota import QuotaManager
from .repository import AnnouncementCatalog, MatchStore, OrganizationStore, PlanStore
from .scorer import calculate_score

logger = structlog.get_logger().bind(component="match_generator")


def ranking_key(candidate: ScoredCandidate) -> tuple:
    """
    Total order for ranking.

    Higher score plus bonus first, then more recently published, then sooner
    deadline with missing deadlines last, then announcement id.
    """
    announcement = candidate.announcement
    published = announcement.published_at.timestamp() if announcement.published_at else float("-inf")
    deadline = announcement.deadline.timestamp() if announcement.deadline else float("inf")
    return (
        -candidate.result.rank_score,
        -published,
        announcement.deadline is None,
        deadline,
        str(announcement.id),
    )


def rank_candidates(candidates: list[ScoredCandidate], top_k: int) -> list[ScoredCandidate]:
    return sorted(candidates, key=ranking_key)[:top_k]


class MatchGenerator:
    """
    Match generation orchestrator.

    Collaborators are injected so the same orchestration runs against SQL
    stores in production and in-memory fakes in tests.
    """

    def __init__(
        self,
        organizations: OrganizationStore,
        catalog: AnnouncementCatalog,
        plans: PlanStore,
        matches: MatchStore,
        quota: QuotaManager,
        cache: Optional[CacheStore] = None,
        config: Optional[ScoringConfig] = None,
        top_k: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.organizations = organizations
        self.catalog = catalog
        self.plans = plans
        self.matches = matches
        self.quota = quota
        self.cache = cache
        self.config = config or default_scoring_config()
        self.top_k = top_k if top_k is not None else settings.match_top_k
        self.clock = clock

    def score_candidates(self, profile, announcements, now: datetime) -> tuple[list[ScoredCandidate], int]:
        """
        Score every candidate. A candidate whose scoring raises is logged and
        dropped; the rest continue.

        Returns:
            (scored candidates, number of candidates that failed)
        """
        scored: list[ScoredCandidate] = []
        failed = 0
        for announcement in announcements:
            try:
                result = calculate_score(profile, announcement, self.config, now)
            except Exception as e:
                failed += 1
                logger.warning(
                    "candidate_scoring_failed",
                    organization_id=str(profile.id),
                    announcement_id=str(announcement.id),
                    error=str(e),
                )
                continue
            scored.append(ScoredCandidate(announcement=announcement, result=result))
        return scored, failed

    def _base_explanations(self, ranked: list[ScoredCandidate]) -> dict[UUID, MatchExplanation]:
        return {
            candidate.announcement.id: build_template_explanation(
                score=candidate.result.score,
                bonus=candidate.result.bonus,
                breakdown=candidate.result.breakdown,
                reason_codes=[code.value for code in candidate.result.reason_codes],
                title=candidate.announcement.title,
            )
            for candidate in ranked
        }

    def generate_matches(self, organization_id: UUID) -> GenerationResult:
        """
        Generate, rank and persist matches for an organization.

        Args:
            organization_id: Organization to generate for.

        Returns:
            GenerationResult in state DONE or NO_CANDIDATES.

        Raises:
            OrganizationNotFoundError: Unknown organization.
            QuotaExceededError: Plan limit reached, including by other
                generations while this one held an expired reservation;
                nothing is charged.
            StorageFailureError: Persistence failed; nothing is charged.
        """
        started = time.monotonic()
        now = self.clock()
        log = logger.bind(organization_id=str(organization_id), config_name=self.config.name)

        profile = self.organizations.get_profile(organization_id)
        if profile is None:
            raise OrganizationNotFoundError(str(organization_id))

        # QUOTA_CHECK
        plan, seat_limit = self.plans.get_plan(organization_id)
        reservation = self.quota.reserve(organization_id, plan, now, seat_limit=seat_limit)

        try:
            # FETCH_CANDIDATES
            candidates = deduplicate_announcements(
                self.catalog.iter_announcements(status=AnnouncementStatus.ACTIVE)
            )

            # FILTER
            eligibility = filter_eligible(profile, candidates, now)
            for excluded in eligibility.excluded:
                log.debug(
                    "announcement_excluded",
                    announcement_id=str(excluded.announcement_id),
                    reason=excluded.reason.value,
                )

            if not eligibility.eligible:
                self.quota.release(reservation)
                log.info("no_eligible_candidates", candidates=len(candidates))
                return GenerationResult(
                    state=GenerationState.NO_CANDIDATES,
                    organization_id=organization_id,
                    config_name=self.config.name,
                    quota=self.quota.status(organization_id, plan, now, seat_limit=seat_limit),
                    excluded_count=len(eligibility.excluded),
                )

            # SCORE_ALL
            scored, failed = self.score_candidates(profile, eligibility.eligible, now)

            # RANK_TOP_K
            ranked = rank_candidates(scored, self.top_k)

            # Slow scoring must not outlive the reservation
            self.quota.renew(reservation, self.clock())

            # PERSIST
            session_id, persisted = self.matches.persist_generation(
                organization_id,
                ranked,
                self._base_explanations(ranked),
                self.config.name,
                now,
            )
        except BaseException:
            self.quota.release(reservation)
            raise

        # QUOTA_INCREMENT
        quota_status = self.quota.commit(reservation, now)

        if self.cache is not None:
            try:
                self.cache.delete(keys.org_matches_key(organization_id))
            except CacheUnavailableError as e:
                # Cached list expires on its own TTL
                log.warning("match_list_cache_evict_failed", error=str(e))

        stats = {
            "candidates": len(candidates),
            "eligible": len(eligibility.eligible),
            "excluded": len(eligibility.excluded),
            "failed": failed,
            "persisted": len(persisted),
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        log.info("matches_generated", session_id=str(session_id), **stats)

        return GenerationResult(
            state=GenerationState.DONE,
            organization_id=organization_id,
            session_id=session_id,
            config_name=self.config.name,
            matches=persisted,
            quota=quota_status,
            excluded_count=len(eligibility.excluded),
            failed_count=failed,
        )
