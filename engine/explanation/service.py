"""
Match Explanation Service

Serves a human-readable rationale per match:

1. Cache lookup by fingerprint (organization, announcement, scoring config)
2. Daily AI budget gate
3. Circuit breaker around the provider
4. Provider call on a worker pool, bounded by a caller-level timeout

Any failure along the way yields a templated explanation labelled with the
reason; callers never see a provider error.
"""
import json
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from functools import lru_cache
from typing import Optional, Protocol
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError, NotFoundError, UpstreamUnavailableError
from backend.services.cache import CacheStore
from backend.utils.business_calendar import utcnow
from engine.cache import keys
from engine.matching.models import (
    ExplanationResponse,
    ExplanationSource,
    FallbackReason,
    MatchExplanation,
    MatchView,
)
from engine.matching.repository import AnnouncementCatalog, OrganizationStore

from .budget import BudgetGate
from .circuit_breaker import CircuitBreaker
from .fallback import build_template_explanation
from .provider import ExplanationContext, ExplanationProvider

logger = structlog.get_logger().bind(component="explanation_service")


class MatchLookup(Protocol):
    def get_view(self, match_id: UUID) -> Optional[MatchView]: ...

    def update_explanation(self, match_id: UUID, explanation: MatchExplanation) -> None: ...


@lru_cache
def get_explanation_executor() -> ThreadPoolExecutor:
    """Process-wide worker pool for provider calls."""
    return ThreadPoolExecutor(
        max_workers=settings.explanation_worker_threads,
        thread_name_prefix="explanation",
    )


@lru_cache
def get_circuit_breaker() -> CircuitBreaker:
    """Process-wide breaker shared by every request."""
    return CircuitBreaker()


class ExplanationService:
    """Cached, budgeted and circuit-protected explanation generation."""

    def __init__(
        self,
        matches: MatchLookup,
        organizations: OrganizationStore,
        catalog: AnnouncementCatalog,
        cache: CacheStore,
        provider: Optional[ExplanationProvider],
        breaker: CircuitBreaker,
        budget: BudgetGate,
        executor: Optional[Executor] = None,
        call_timeout_seconds: Optional[float] = None,
        cache_ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.matches = matches
        self.organizations = organizations
        self.catalog = catalog
        self.cache = cache
        self.provider = provider
        self.breaker = breaker
        self.budget = budget
        self.executor = executor or get_explanation_executor()
        self.call_timeout_seconds = (
            call_timeout_seconds
            if call_timeout_seconds is not None
            else settings.explanation_call_timeout_seconds
        )
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else settings.explanation_cache_ttl_seconds
        )
        self.clock = clock

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def read_cached(
        self,
        fingerprint: str,
        profile_updated_at: datetime,
        announcement_updated_at: Optional[datetime] = None,
    ) -> Optional[MatchExplanation]:
        """
        Return a cached explanation that is not older than the profile or
        the announcement it was built from.

        Entries built from an earlier profile or announcement version are
        evicted and treated as a miss.
        """
        try:
            raw = self.cache.get(keys.explanation_key(fingerprint))
        except CacheUnavailableError as e:
            logger.warning("explanation_cache_read_failed", error=str(e))
            return None
        if raw is None:
            return None

        try:
            entry = json.loads(raw)
            built_for = datetime.fromisoformat(entry["profile_updated_at"])
            built_for_announcement = entry.get("announcement_updated_at")
            if built_for_announcement is not None:
                built_for_announcement = datetime.fromisoformat(built_for_announcement)
            explanation = MatchExplanation.model_validate(entry["explanation"])
        except (ValueError, KeyError, TypeError, PydanticValidationError):
            logger.warning("explanation_cache_entry_corrupt", fingerprint=fingerprint)
            self._evict(fingerprint)
            return None

        announcement_changed = announcement_updated_at is not None and (
            built_for_announcement is None or built_for_announcement < announcement_updated_at
        )
        if built_for < profile_updated_at or announcement_changed:
            logger.info("explanation_cache_stale", fingerprint=fingerprint)
            self._evict(fingerprint)
            return None
        return explanation

    def _evict(self, fingerprint: str) -> None:
        try:
            self.cache.delete(keys.explanation_key(fingerprint))
        except CacheUnavailableError as e:
            logger.warning("explanation_cache_evict_failed", error=str(e))

    def write_cached(
        self,
        fingerprint: str,
        organization_id: UUID,
        announcement_id: UUID,
        explanation: MatchExplanation,
        profile_updated_at: datetime,
        announcement_updated_at: Optional[datetime] = None,
    ) -> None:
        entry = json.dumps({
            "explanation": explanation.model_dump(mode="json"),
            "profile_updated_at": profile_updated_at.isoformat(),
            "announcement_updated_at": (
                announcement_updated_at.isoformat() if announcement_updated_at is not None else None
            ),
        })
        try:
            self.cache.set(keys.explanation_key(fingerprint), entry, ttl_seconds=self.cache_ttl_seconds)
            self.cache.sadd(
                keys.explanation_org_index(organization_id),
                fingerprint,
                ttl_seconds=self.cache_ttl_seconds,
            )
            self.cache.sadd(
                keys.explanation_announcement_index(announcement_id),
                fingerprint,
                ttl_seconds=self.cache_ttl_seconds,
            )
        except CacheUnavailableError as e:
            logger.warning("explanation_cache_write_failed", fingerprint=fingerprint, error=str(e))

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _fallback(self, match: MatchView, reason: FallbackReason) -> ExplanationResponse:
        logger.info(
            "explanation_fallback",
            match_id=str(match.id),
            reason=reason.value,
        )
        explanation = build_template_explanation(
            score=match.score,
            bonus=match.bonus,
            breakdown=match.breakdown,
            reason_codes=match.reason_codes,
            title=match.title,
            fallback_reason=reason,
        )
        return ExplanationResponse(match_id=match.id, explanation=explanation, cached=False)

    def _call_provider(self, context: ExplanationContext):
        future = self.executor.submit(self.provider.generate, context)
        try:
            return future.result(timeout=self.call_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise

    def _sources_changed(
        self,
        match: MatchView,
        profile_updated_at: datetime,
        announcement_updated_at: Optional[datetime],
    ) -> bool:
        current = self.catalog.get(match.announcement_id)
        if current is None or current.updated_at != announcement_updated_at:
            return True
        return self.organizations.get_updated_at(match.organization_id) != profile_updated_at

    def get_explanation(self, match_id: UUID) -> ExplanationResponse:
        """
        Get the explanation for a match.

        Args:
            match_id: Match identifier.

        Returns:
            ExplanationResponse; ``cached`` is True only for cache hits.

        Raises:
            NotFoundError: Unknown match, or its organization/announcement is gone.
        """
        match = self.matches.get_view(match_id)
        if match is None:
            raise NotFoundError("Match", str(match_id))

        profile = self.organizations.get_profile(match.organization_id)
        announcement = self.catalog.get(match.announcement_id)
        if profile is None or announcement is None:
            raise NotFoundError("Match", str(match_id))

        fingerprint = keys.explanation_fingerprint(
            match.organization_id,
            match.announcement_id,
            match.config_name,
        )
        cached = self.read_cached(fingerprint, profile.updated_at, announcement.updated_at)
        if cached is not None:
            return ExplanationResponse(match_id=match.id, explanation=cached, cached=True)

        if self.provider is None:
            return self._fallback(match, FallbackReason.NOT_CONFIGURED)

        now = self.clock()
        if not self.budget.has_budget(now):
            return self._fallback(match, FallbackReason.BUDGET_EXHAUSTED)

        if not self.breaker.allow_request():
            return self._fallback(match, FallbackReason.CIRCUIT_OPEN)

        context = ExplanationContext(
            profile=profile,
            announcement=announcement,
            score=match.score,
            bonus=match.bonus,
            breakdown=match.breakdown,
            reason_codes=match.reason_codes,
        )
        try:
            response = self._call_provider(context)
        except FutureTimeoutError:
            self.breaker.record_failure()
            logger.warning("explanation_provider_timeout", match_id=str(match.id), timeout=self.call_timeout_seconds)
            return self._fallback(match, FallbackReason.TIMEOUT)
        except UpstreamUnavailableError as e:
            self.breaker.record_failure()
            logger.warning("explanation_provider_failed", match_id=str(match.id), error=str(e))
            return self._fallback(match, FallbackReason.PROVIDER_ERROR)
        except Exception as e:
            self.breaker.record_failure()
            logger.exception("explanation_provider_error", match_id=str(match.id), error=str(e))
            return self._fallback(match, FallbackReason.PROVIDER_ERROR)

        self.breaker.record_success()
        try:
            self.budget.record_usage(response.input_tokens, response.output_tokens, now)
        except CacheUnavailableError as e:
            logger.warning("ai_spend_record_failed", error=str(e))

        explanation = MatchExplanation(
            summary=response.summary,
            breakdown=dict(match.breakdown),
            reasons=response.reasons,
            warnings=response.warnings,
            source=ExplanationSource.AI,
        )
        if self._sources_changed(match, profile.updated_at, announcement.updated_at):
            # Invalidated while the provider was running; serve once, keep nothing
            logger.info("explanation_sources_changed", match_id=str(match.id), fingerprint=fingerprint)
            return ExplanationResponse(match_id=match.id, explanation=explanation, cached=False)

        self.write_cached(
            fingerprint,
            match.organization_id,
            match.announcement_id,
            explanation,
            profile.updated_at,
            announcement.updated_at,
        )
        try:
            self.matches.update_explanation(match.id, explanation)
        except SQLAlchemyError as e:
            logger.warning("explanation_persist_failed", match_id=str(match.id), error=str(e))

        logger.info("explanation_generated", match_id=str(match.id), fingerprint=fingerprint)
        return ExplanationResponse(match_id=match.id, explanation=explanation, cached=False)
