"""
Cache Warming

Operator-triggered batch population of shared and per-organization cache
entries. Never runs on the request path.

Strategies:
    - programs: shared list of active R&D announcements
    - organization: one organization's profile snapshot and top matches
      (optionally pre-generating explanations)
    - full: every organization active in the last N days, capped
    - smart: organizations active today plus programs (default)
"""
import json
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError, NotFoundError
from backend.models import AnnouncementStatus, AnnouncementType
from backend.services.cache import CacheStore
from backend.utils.business_calendar import start_of_business_day, utcnow
from engine.matching.models import MatchView

from . import keys

logger = structlog.get_logger().bind(component="cache_warming")


class WarmingStrategy(str, Enum):
    PROGRAMS = "programs"
    ORGANIZATION = "organization"
    FULL = "full"
    SMART = "smart"


class WarmingParams(BaseModel):
    organization_id: Optional[UUID] = None
    max_organizations: Optional[int] = Field(default=None, ge=1)
    include_explanations: bool = False
    top_n: int = Field(default=5, ge=1, le=50)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    force: bool = False


class WarmingReport(BaseModel):
    strategy: WarmingStrategy
    items_warmed: int = 0
    items_skipped: int = 0
    errors: int = 0
    organizations: int = 0
    duration_ms: int = 0
    timed_out: bool = False


class _Budget:
    def __init__(self, timeout_seconds: float):
        self.deadline = time.monotonic() + timeout_seconds

    @property
    def exhausted(self) -> bool:
        return time.monotonic() >= self.deadline


def read_match_list(
    cache: CacheStore,
    matches,
    organization_id: UUID,
    limit: Optional[int] = None,
) -> tuple[list[MatchView], bool]:
    """
    Read an organization's ranked matches through the cache.

    Returns:
        (matches, served_from_cache)
    """
    key = keys.org_matches_key(organization_id)
    try:
        raw = cache.get(key)
    except CacheUnavailableError as e:
        logger.warning("match_list_cache_read_failed", error=str(e))
        raw = None

    if raw is not None:
        views = [MatchView.model_validate(item) for item in json.loads(raw)]
        return (views[:limit] if limit else views), True

    views = matches.list_for_organization(organization_id, limit=settings.match_top_k)
    try:
        cache.set(
            key,
            json.dumps([view.model_dump(mode="json") for view in views]),
            ttl_seconds=settings.cache_match_results_ttl_seconds,
        )
    except CacheUnavailableError as e:
        logger.warning("match_list_cache_write_failed", error=str(e))
    return (views[:limit] if limit else views), False


class CacheWarmer:
    """Runs warming strategies against the cache store."""

    def __init__(
        self,
        cache: CacheStore,
        organizations,
        catalog,
        matches,
        explanations=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.organizations = organizations
        self.catalog = catalog
        self.matches = matches
        self.explanations = explanations
        self.clock = clock

    def _exists(self, key: str) -> bool:
        return self.cache.get(key) is not None

    def warm_programs(self, report: WarmingReport, force: bool = False) -> None:
        key = keys.programs_key()
        if not force and self._exists(key):
            report.items_skipped += 1
            return
        programs = list(
            self.catalog.iter_announcements(
                status=AnnouncementStatus.ACTIVE,
                types=[AnnouncementType.R_D_PROJECT],
            )
        )
        self.cache.set(
            key,
            json.dumps([program.model_dump(mode="json") for program in programs]),
            ttl_seconds=settings.cache_programs_ttl_seconds,
        )
        report.items_warmed += len(programs)

    def warm_organization(
        self,
        organization_id: UUID,
        report: WarmingReport,
        include_explanations: bool = False,
        top_n: int = 5,
        force: bool = False,
    ) -> None:
        """Warm one organization's profile snapshot and match list."""
        profile = self.organizations.get_profile(organization_id)
        if profile is None:
            raise NotFoundError("Organization", str(organization_id))
        report.organizations += 1

        profile_key = keys.org_profile_key(organization_id)
        if force or not self._exists(profile_key):
            self.cache.set(
                profile_key,
                profile.model_dump_json(),
                ttl_seconds=settings.cache_org_profile_ttl_seconds,
            )
            report.items_warmed += 1
        else:
            report.items_skipped += 1

        matches_key = keys.org_matches_key(organization_id)
        if force:
            self.cache.delete(matches_key)
        views, from_cache = read_match_list(
            self.cache,
            self.matches,
            organization_id,
            limit=settings.warming_top_matches,
        )
        if from_cache:
            report.items_skipped += 1
        else:
            report.items_warmed += 1

        if include_explanations and self.explanations is not None:
            for view in views[:top_n]:
                response = self.explanations.get_explanation(view.id)
                if response.cached:
                    report.items_skipped += 1
                elif response.explanation.fallback_reason is None:
                    report.items_warmed += 1
                else:
                    # Budget or breaker refused; stop spending on this run
                    report.items_skipped += 1
                    break

    def _warm_organizations(
        self,
        organization_ids: list[UUID],
        report: WarmingReport,
        budget: _Budget,
        params: WarmingParams,
    ) -> None:
        for organization_id in organization_ids:
            if budget.exhausted:
                report.timed_out = True
                return
            try:
                self.warm_organization(
                    organization_id,
                    report,
                    include_explanations=params.include_explanations,
                    top_n=params.top_n,
                    force=params.force,
                )
            except (CacheUnavailableError, SQLAlchemyError, NotFoundError) as e:
                report.errors += 1
                logger.warning(
                    "organization_warming_failed",
                    organization_id=str(organization_id),
                    error=str(e),
                )

    def warm(self, strategy: WarmingStrategy, params: Optional[WarmingParams] = None) -> WarmingReport:
        """
        Run a warming strategy.

        Args:
            strategy: Which entries to warm.
            params: Strategy parameters (organization id, caps, timeout).

        Returns:
            WarmingReport with counts, duration and whether the timeout hit.
        """
        params = params or WarmingParams()
        started = time.monotonic()
        budget = _Budget(params.timeout_seconds or settings.warming_timeout_seconds)
        report = WarmingReport(strategy=strategy)
        now = self.clock()

        try:
            if strategy == WarmingStrategy.PROGRAMS:
                self.warm_programs(report, force=params.force)

            elif strategy == WarmingStrategy.ORGANIZATION:
                if params.organization_id is None:
                    raise ValueError("organization strategy requires organization_id")
                self.warm_organization(
                    params.organization_id,
                    report,
                    include_explanations=params.include_explanations,
                    top_n=params.top_n,
                    force=params.force,
                )

            elif strategy == WarmingStrategy.FULL:
                since = now - timedelta(days=settings.warming_active_days)
                limit = params.max_organizations or settings.warming_full_max_organizations
                self._warm_organizations(
                    self.organizations.list_active_since(since, limit),
                    report,
                    budget,
                    params,
                )

            elif strategy == WarmingStrategy.SMART:
                limit = params.max_organizations or settings.warming_smart_max_organizations
                self._warm_organizations(
                    self.organizations.list_active_since(start_of_business_day(now), limit),
                    report,
                    budget,
                    params,
                )
                if not report.timed_out:
                    self.warm_programs(report, force=params.force)

        except (CacheUnavailableError, SQLAlchemyError) as e:
            report.errors += 1
            logger.error("cache_warming_failed", strategy=strategy.value, error=str(e))

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("cache_warming_complete", **report.model_dump(mode="json"))
        return report
