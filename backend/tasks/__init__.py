"""
GrantMatch Celery Tasks

Task Modules:
    - cache_warming: Cache warming and invalidation tasks
    - ranking_metrics: Daily ranking quality metrics

Queue Priorities:
    - high: cache invalidation
    - normal: warming, metrics

Usage:
    from backend.tasks import cache_warming

    cache_warming.warm_cache.delay("organization", {"organization_id": "..."})
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.tasks import cache_warming, ranking_metrics

__all__ = [
    "cache_warming",
    "ranking_metrics",
]
