"""
Cache Invalidation Controller

Targeted eviction of cached explanations and warmed entries:
- Profile update: every fingerprint of that organization, nothing else
- Announcement reclassification: every fingerprint referencing the
  announcement, platform-wide, immediately

Cache store failures are retried with bounded exponential backoff. If the
invalidation still cannot complete, it is logged at error level and raised
as an operational alert.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError, NotFoundError
from backend.core.sentry import capture_message
from backend.models import AnnouncementType
from backend.services.cache import CacheStore
from backend.utils.business_calendar import utcnow

from . import keys

logger = structlog.get_logger().bind(component="cache_invalidation")


class InvalidationReport(BaseModel):
    scope: str
    target_id: UUID
    fingerprints: int = 0
    keys_deleted: int = 0
    completed: bool = True


class ReclassificationResult(BaseModel):
    announcement_id: UUID
    previous_type: AnnouncementType
    new_type: AnnouncementType
    previous_category: Optional[str] = None
    new_category: Optional[str] = None
    matches_removed: int = 0
    invalidation: InvalidationReport


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "cache_invalidation_retry",
        attempt=retry_state.attempt_number,
        wait=retry_state.next_action.sleep if retry_state.next_action else None,
    )


class InvalidationController:
    """Evicts cache entries affected by profile or catalog changes."""

    def __init__(
        self,
        cache: CacheStore,
        catalog=None,
        matches=None,
        max_attempts: Optional[int] = None,
        wait: Optional[wait_base] = None,
    ):
        """
        Args:
            cache: Cache store holding explanations and warmed entries.
            catalog: Announcement catalog supporting ``reclassify`` (admin path only).
            matches: Match store supporting ``delete_unsaved_for_announcement``.
            max_attempts: Attempts per invalidation before alerting.
            wait: Backoff strategy between attempts.
        """
        self.cache = cache
        self.catalog = catalog
        self.matches = matches
        self.max_attempts = max_attempts or settings.invalidation_max_attempts
        self.wait = wait or wait_exponential(
            multiplier=0.5,
            min=0.5,
            max=settings.invalidation_backoff_max_seconds,
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(CacheUnavailableError),
            before_sleep=_log_retry,
            reraise=True,
        )

    def _run(self, scope: str, target_id: UUID, operation) -> InvalidationReport:
        try:
            fingerprints, deleted = self._retrying()(operation)
        except CacheUnavailableError as e:
            logger.error(
                "cache_invalidation_failed",
                scope=scope,
                target_id=str(target_id),
                attempts=self.max_attempts,
                error=str(e),
            )
            capture_message(
                f"Cache invalidation failed for {scope} {target_id}",
                level="error",
                extra={"scope": scope, "target_id": str(target_id), "error": str(e)},
            )
            return InvalidationReport(scope=scope, target_id=target_id, completed=False)

        logger.info(
            "cache_invalidated",
            scope=scope,
            target_id=str(target_id),
            fingerprints=fingerprints,
            keys_deleted=deleted,
        )
        return InvalidationReport(
            scope=scope,
            target_id=target_id,
            fingerprints=fingerprints,
            keys_deleted=deleted,
        )

    def _evict_index(self, index_key: str) -> tuple[int, int]:
        fingerprints = self.cache.smembers(index_key)
        explanation_keys = [keys.explanation_key(fp) for fp in sorted(fingerprints)]
        deleted = self.cache.delete(*explanation_keys) if explanation_keys else 0
        self.cache.delete(index_key)
        return len(fingerprints), deleted

    def invalidate_organization(self, organization_id: UUID) -> InvalidationReport:
        """
        Evict every cached explanation and warmed entry of one organization.

        Entries of other organizations are never touched.
        """

        def operation() -> tuple[int, int]:
            fingerprints, deleted = self._evict_index(keys.explanation_org_index(organization_id))
            deleted += self.cache.delete(
                keys.org_profile_key(organization_id),
                keys.org_matches_key(organization_id),
            )
            return fingerprints, deleted

        return self._run("organization", organization_id, operation)

    def invalidate_announcement(self, announcement_id: UUID) -> InvalidationReport:
        """
        Evict every cached explanation referencing an announcement, plus the
        shared programs list and warmed match lists that may include it.
        """

        def operation() -> tuple[int, int]:
            fingerprints, deleted = self._evict_index(keys.explanation_announcement_index(announcement_id))
            deleted += self.cache.delete(keys.programs_key())
            deleted += self.cache.delete_pattern(keys.org_matches_key("*"))
            return fingerprints, deleted

        return self._run("announcement", announcement_id, operation)

    def reclassify_announcement(
        self,
        announcement_id: UUID,
        new_type: AnnouncementType,
        new_category: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReclassificationResult:
        """
        Override an announcement's classification and invalidate immediately.

        Moving an announcement out of R_D_PROJECT also removes the unsaved
        matches that reference it.

        Raises:
            NotFoundError: Unknown announcement.
            StorageFailureError: The catalog update could not be committed.
        """
        if self.catalog is None:
            raise RuntimeError("reclassification requires an announcement catalog")

        changed = self.catalog.reclassify(announcement_id, new_type, new_category, now or utcnow())
        if changed is None:
            raise NotFoundError("Announcement", str(announcement_id))
        before, after = changed

        removed = 0
        if after.announcement_type != AnnouncementType.R_D_PROJECT and self.matches is not None:
            removed = self.matches.delete_unsaved_for_announcement(announcement_id)

        report = self.invalidate_announcement(announcement_id)
        logger.info(
            "announcement_reclassified",
            announcement_id=str(announcement_id),
            previous_type=before.announcement_type.value,
            new_type=after.announcement_type.value,
            matches_removed=removed,
        )
        return ReclassificationResult(
            announcement_id=announcement_id,
            previous_type=before.announcement_type,
            new_type=after.announcement_type,
            previous_category=before.category,
            new_category=after.category,
            matches_removed=removed,
            invalidation=report,
        )
