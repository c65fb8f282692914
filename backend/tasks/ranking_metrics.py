"""
GrantMatch Ranking Metrics Task

Daily offline batch computing precision@K, nDCG@K and hit-rate@K over the
last seven whole business days, stored as a snapshot per (window, config).

Queue: normal
"""

import logging
from datetime import datetime
from typing import Any, Optional

from backend.celery_app import celery_app
from backend.database import get_sync_session
from engine.metrics.collector import RankingMetricsCollector, seven_day_window

logger = logging.getLogger(__name__)


@celery_app.task(
    name="backend.tasks.ranking_metrics.compute_ranking_metrics",
    queue="normal",
    soft_time_limit=900,
    time_limit=1200,
)
def compute_ranking_metrics(
    window_end: Optional[str] = None,
    config_name: Optional[str] = None,
) -> dict[str, Any]:
    """
    Compute and persist ranking metrics.

    Args:
        window_end: ISO timestamp; the window ends at the last business
            midnight at or before it. Defaults to now.
        config_name: Restrict to one scoring config.

    Returns:
        dict: The computed metrics.
    """
    start, end = seven_day_window(datetime.fromisoformat(window_end) if window_end else None)
    logger.info(f"Computing ranking metrics for {start.isoformat()} - {end.isoformat()}")

    with get_sync_session() as session:
        collector = RankingMetricsCollector(session)
        metrics = collector.compute_metrics(start, end, config_name=config_name)
        collector.persist_metrics(metrics)

    return metrics.model_dump(mode="json")
