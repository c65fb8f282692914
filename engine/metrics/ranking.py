"""
Ranking quality metrics over generation sessions.

Binary relevance: an item is relevant when the user saved it. Positions are
1-based. K is capped per session at the number of generated items
(effective K) so short result sets are not penalized.
"""
import math
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


@dataclass
class SessionOutcome:
    """One generation session and the positions the user saved from it."""

    session_id: UUID
    generated_count: int
    config_name: str
    saved_positions: list[int] = field(default_factory=list)
    is_cached: bool = False
    created_at: Optional[datetime] = None


class MetricValue(BaseModel):
    value: Optional[float] = None
    sample_size: int = 0
    is_sufficient: bool = False


class ComputedMetrics(BaseModel):
    window_start: datetime
    window_end: datetime
    config_name: str
    precision_at_5: MetricValue
    precision_at_10: MetricValue
    ndcg_at_10: MetricValue
    hit_rate_at_10: MetricValue
    total_sessions: int
    cached_session_ratio: Optional[float] = None
    computed_at: datetime
    data_watermark: datetime


def effective_k(k: int, generated_count: int) -> int:
    return min(k, generated_count)


def _relevant_positions(saved_positions: Iterable[int], limit: int) -> set[int]:
    return {p for p in saved_positions if 1 <= p <= limit}


def precision_at_k(saved_positions: Sequence[int], generated_count: int, k: int) -> Optional[float]:
    """Saved items within the top effective K, divided by effective K. None if nothing was generated."""
    ek = effective_k(k, generated_count)
    if ek <= 0:
        return None
    return len(_relevant_positions(saved_positions, ek)) / ek


def dcg_at_k(saved_positions: Sequence[int], k: int) -> float:
    return sum(1.0 / math.log2(p + 1) for p in _relevant_positions(saved_positions, k))


def ndcg_at_k(saved_positions: Sequence[int], generated_count: int, k: int) -> Optional[float]:
    """
    Normalized DCG at K with binary relevance.

    Undefined (None) for sessions without saves or without generated items.
    """
    ek = effective_k(k, generated_count)
    saves = {p for p in saved_positions if 1 <= p <= generated_count}
    if ek <= 0 or not saves:
        return None
    ideal = sum(1.0 / math.log2(i + 1) for i in range(1, min(len(saves), ek) + 1))
    return dcg_at_k(sorted(saves), ek) / ideal


def hit_at_k(saved_positions: Sequence[int], generated_count: int, k: int) -> Optional[bool]:
    ek = effective_k(k, generated_count)
    if ek <= 0:
        return None
    return bool(_relevant_positions(saved_positions, ek))


def aggregate(values: Iterable[Optional[float]], min_sample_size: int) -> MetricValue:
    """Mean over defined values, flagged insufficient below ``min_sample_size``."""
    defined = [v for v in values if v is not None]
    if not defined:
        return MetricValue(value=None, sample_size=0, is_sufficient=False)
    return MetricValue(
        value=sum(defined) / len(defined),
        sample_size=len(defined),
        is_sufficient=len(defined) >= min_sample_size,
    )


def dominant_config(sessions: Iterable[SessionOutcome], default: str) -> str:
    """Most frequent config name; ties go to the lexicographically smallest."""
    counts = Counter(s.config_name for s in sessions)
    if not counts:
        return default
    return min(counts, key=lambda name: (-counts[name], name))


def compute_session_metrics(
    sessions: Sequence[SessionOutcome],
    min_sample_size: int,
) -> dict[str, MetricValue]:
    return {
        "precision_at_5": aggregate(
            (precision_at_k(s.saved_positions, s.generated_count, 5) for s in sessions),
            min_sample_size,
        ),
        "precision_at_10": aggregate(
            (precision_at_k(s.saved_positions, s.generated_count, 10) for s in sessions),
            min_sample_size,
        ),
        "ndcg_at_10": aggregate(
            (ndcg_at_k(s.saved_positions, s.generated_count, 10) for s in sessions),
            min_sample_size,
        ),
        "hit_rate_at_10": aggregate(
            (
                None if hit is None else float(hit)
                for hit in (hit_at_k(s.saved_positions, s.generated_count, 10) for s in sessions)
            ),
            min_sample_size,
        ),
    }
