"""
Admin schemas for cache control, reclassification and ranking metrics.
"""
from typing import Optional

from pydantic import BaseModel, Field

from backend.models import AnnouncementType
from engine.cache.warming import WarmingParams, WarmingStrategy


class ReclassifyRequest(BaseModel):
    """Schema for overriding an announcement's classification."""

    announcement_type: AnnouncementType = Field(..., description="New announcement type")
    category: Optional[str] = Field(None, description="New category (unchanged when omitted)")


class WarmCacheRequest(BaseModel):
    """Schema for triggering a cache warming run."""

    strategy: WarmingStrategy = Field(WarmingStrategy.SMART, description="Warming strategy")
    params: WarmingParams = Field(default_factory=WarmingParams, description="Strategy parameters")
    run_async: bool = Field(False, description="Queue the run on a worker instead of running inline")


class WarmCacheQueued(BaseModel):
    """Schema returned when a warming run is queued."""

    task_id: str = Field(..., description="Celery task ID")
    strategy: WarmingStrategy = Field(..., description="Queued strategy")
