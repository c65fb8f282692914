"""
Ranking Metrics Collector

Offline, read-only batch job over a time window of generation sessions and
their attributed saves. Results are tagged with the dominant scoring config
of the window and a data watermark (latest contributing save).
"""
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import settings
from backend.core.exceptions import StorageFailureError
from backend.models import AttributedSave, GenerationSession, RankingMetricSnapshot
from backend.utils.business_calendar import business_day_window, utcnow
from engine.matching.models import default_scoring_config

from .ranking import ComputedMetrics, SessionOutcome, compute_session_metrics, dominant_config

logger = structlog.get_logger().bind(component="ranking_metrics")


def seven_day_window(end: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Metrics window of whole business days ending at the last business midnight."""
    return business_day_window(end or utcnow(), settings.metrics_window_days)


class RankingMetricsCollector:
    """Computes precision@K, nDCG@K and hit-rate@K for a window."""

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    def load_sessions(
        self,
        window_start: datetime,
        window_end: datetime,
        config_name: Optional[str] = None,
    ) -> tuple[list[SessionOutcome], Optional[datetime]]:
        """
        Load sessions created in [window_start, window_end) with their saves.

        Returns:
            (session outcomes, latest save time or None)
        """
        query = (
            select(GenerationSession)
            .where(GenerationSession.created_at >= window_start)
            .where(GenerationSession.created_at < window_end)
            .order_by(GenerationSession.created_at, GenerationSession.id)
        )
        if config_name is not None:
            query = query.where(GenerationSession.config_name == config_name)
        rows = list(self.session.execute(query).scalars())
        if not rows:
            return [], None

        session_ids = [row.id for row in rows]
        positions: dict[UUID, list[int]] = defaultdict(list)
        watermark: Optional[datetime] = None
        for chunk_start in range(0, len(session_ids), 500):
            chunk = session_ids[chunk_start:chunk_start + 500]
            saves = self.session.execute(
                select(AttributedSave).where(AttributedSave.session_id.in_(chunk))
            ).scalars()
            for save in saves:
                positions[save.session_id].append(save.position)
                if watermark is None or save.saved_at > watermark:
                    watermark = save.saved_at

        outcomes = [
            SessionOutcome(
                session_id=row.id,
                generated_count=row.generated_count,
                config_name=row.config_name,
                saved_positions=sorted(positions.get(row.id, [])),
                is_cached=row.is_cached,
                created_at=row.created_at,
            )
            for row in rows
        ]
        return outcomes, watermark

    def compute_metrics(
        self,
        window_start: datetime,
        window_end: datetime,
        min_sample_size: Optional[int] = None,
        config_name: Optional[str] = None,
    ) -> ComputedMetrics:
        """
        Compute ranking metrics for a window.

        Args:
            window_start: Inclusive start.
            window_end: Exclusive end.
            min_sample_size: Qualifying sessions required for a metric to be
                flagged sufficient.
            config_name: Restrict to one scoring config (A/B comparisons).

        Returns:
            ComputedMetrics; insufficient samples are flagged, never raised.
        """
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")
        min_sample = min_sample_size if min_sample_size is not None else settings.metrics_min_sample_size

        sessions, watermark = self.load_sessions(window_start, window_end, config_name)
        values = compute_session_metrics(sessions, min_sample)
        cached = sum(1 for s in sessions if s.is_cached)

        metrics = ComputedMetrics(
            window_start=window_start,
            window_end=window_end,
            config_name=config_name or dominant_config(sessions, default_scoring_config().name),
            total_sessions=len(sessions),
            cached_session_ratio=cached / len(sessions) if sessions else None,
            computed_at=self.clock(),
            data_watermark=watermark or window_end,
            **values,
        )
        logger.info(
            "ranking_metrics_computed",
            config_name=metrics.config_name,
            sessions=len(sessions),
            precision_at_5=metrics.precision_at_5.value,
            ndcg_at_10=metrics.ndcg_at_10.value,
            sufficient=metrics.precision_at_10.is_sufficient,
        )
        return metrics

    def persist_metrics(self, metrics: ComputedMetrics) -> RankingMetricSnapshot:
        """Insert or replace the snapshot for (window, config)."""
        try:
            snapshot = self.session.execute(
                select(RankingMetricSnapshot)
                .where(RankingMetricSnapshot.period_start == metrics.window_start)
                .where(RankingMetricSnapshot.period_end == metrics.window_end)
                .where(RankingMetricSnapshot.config_name == metrics.config_name)
            ).scalar_one_or_none()
            if snapshot is None:
                snapshot = RankingMetricSnapshot(
                    period_start=metrics.window_start,
                    period_end=metrics.window_end,
                    config_name=metrics.config_name,
                )
                self.session.add(snapshot)

            snapshot.precision_at_5 = metrics.precision_at_5.value
            snapshot.precision_at_10 = metrics.precision_at_10.value
            snapshot.ndcg_at_10 = metrics.ndcg_at_10.value
            snapshot.hit_rate_at_10 = metrics.hit_rate_at_10.value
            snapshot.sample_size = metrics.precision_at_10.sample_size
            snapshot.cached_session_ratio = metrics.cached_session_ratio
            snapshot.is_sufficient_sample = metrics.precision_at_10.is_sufficient
            snapshot.data_watermark = metrics.data_watermark
            snapshot.computed_at = metrics.computed_at
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("ranking_metrics_persist_failed", error=str(e))
            raise StorageFailureError() from e
        return snapshot
