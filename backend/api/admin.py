"""
Admin API Endpoints
Cache invalidation, announcement reclassification, cache warming and
ranking metrics. Protected by the X-Admin-Key header when configured.
"""
import logging
from datetime import datetime, timezone
from typing import Annotated, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from backend.api.deps import (
    AdminAccess,
    get_cache_warmer,
    get_invalidation_controller,
    get_metrics_collector,
)
from backend.core.exceptions import ValidationError
from backend.schemas.admin import ReclassifyRequest, WarmCacheQueued, WarmCacheRequest
from engine.cache.invalidation import (
    InvalidationController,
    InvalidationReport,
    ReclassificationResult,
)
from engine.cache.warming import CacheWarmer, WarmingReport
from engine.metrics.collector import RankingMetricsCollector, seven_day_window
from engine.metrics.ranking import ComputedMetrics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[AdminAccess])


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@router.post(
    "/cache/organizations/{organization_id}/invalidate",
    response_model=InvalidationReport,
    summary="Invalidate an organization's cache",
)
def invalidate_organization(
    organization_id: UUID,
    controller: Annotated[InvalidationController, Depends(get_invalidation_controller)],
) -> InvalidationReport:
    return controller.invalidate_organization(organization_id)


@router.post(
    "/cache/announcements/{announcement_id}/invalidate",
    response_model=InvalidationReport,
    summary="Invalidate an announcement's cache",
)
def invalidate_announcement(
    announcement_id: UUID,
    controller: Annotated[InvalidationController, Depends(get_invalidation_controller)],
) -> InvalidationReport:
    return controller.invalidate_announcement(announcement_id)


@router.post(
    "/announcements/{announcement_id}/reclassify",
    response_model=ReclassificationResult,
    summary="Reclassify an announcement",
    description="Override an announcement's type or category. Cached explanations that "
    "reference it are evicted platform-wide immediately.",
)
def reclassify_announcement(
    announcement_id: UUID,
    request: ReclassifyRequest,
    controller: Annotated[InvalidationController, Depends(get_invalidation_controller)],
) -> ReclassificationResult:
    return controller.reclassify_announcement(
        announcement_id,
        request.announcement_type,
        request.category,
    )


@router.post(
    "/cache/warm",
    response_model=Union[WarmCacheQueued, WarmingReport],
    summary="Warm the cache",
    description="Run a warming strategy inline, or queue it on a worker with run_async.",
)
def warm_cache(
    request: WarmCacheRequest,
    warmer: Annotated[CacheWarmer, Depends(get_cache_warmer)],
) -> Union[WarmCacheQueued, WarmingReport]:
    if request.run_async:
        from backend.tasks.cache_warming import warm_cache as warm_cache_task

        result = warm_cache_task.delay(
            request.strategy.value,
            request.params.model_dump(mode="json"),
        )
        logger.info(f"Queued cache warming: strategy={request.strategy.value} task={result.id}")
        return WarmCacheQueued(task_id=result.id, strategy=request.strategy)

    return warmer.warm(request.strategy, request.params)


@router.get(
    "/metrics/ranking",
    response_model=ComputedMetrics,
    summary="Ranking quality metrics",
    description="precision@5, precision@10, nDCG@10 and hit-rate@10 over a window. "
    "Defaults to the last seven whole business days.",
)
def ranking_metrics(
    collector: Annotated[RankingMetricsCollector, Depends(get_metrics_collector)],
    window_start: Optional[datetime] = Query(default=None, description="Inclusive window start"),
    window_end: Optional[datetime] = Query(default=None, description="Exclusive window end"),
    min_sample_size: Optional[int] = Query(default=None, ge=1, description="Sessions required per metric"),
    config_name: Optional[str] = Query(default=None, description="Restrict to one scoring config"),
    persist: bool = Query(default=False, description="Store the result as a snapshot"),
) -> ComputedMetrics:
    default_start, default_end = seven_day_window()
    start = _as_utc(window_start) if window_start else default_start
    end = _as_utc(window_end) if window_end else default_end
    if end <= start:
        raise ValidationError("window_end must be after window_start")

    metrics = collector.compute_metrics(
        start,
        end,
        min_sample_size=min_sample_size,
        config_name=config_name,
    )
    if persist:
        collector.persist_metrics(metrics)
    return metrics
