"""
Match Score Calculator
Deterministic weighted scoring of an organization against one announcement.

Five criteria, each worth its configured weight:
1. Industry relevance - exact (case-insensitive) sector/category equality
2. TRL fit - inside [min_trl, max_trl], linear decay within the tolerance
3. Organization type - type listed in target types, or no restriction
4. R&D experience - graded by declared experience and announcement flag
5. Deadline proximity - full when far, decaying inside the urgency window

Points are summed and normalized to a 0-100 integer. An exact category match
adds a bonus that is tracked separately from the 0-100 score.
"""
from datetime import datetime
from typing import Optional

from backend.core.config import settings

from .models import (
    AnnouncementData,
    ConfidenceLevel,
    Criterion,
    OrganizationProfile,
    ReasonCode,
    ScoreResult,
    ScoringConfig,
)

EXACT_CATEGORY_BONUS = 10

# Deadline proximity (days)
DEADLINE_FULL_CREDIT_DAYS = 60
DEADLINE_URGENT_DAYS = 7
DEADLINE_URGENT_FRACTION = 0.1
DEADLINE_UNKNOWN_FRACTION = 0.5

# Confidence thresholds (number of criteria with usable inputs)
HIGH_CONFIDENCE_CRITERIA = 4
MEDIUM_CONFIDENCE_CRITERIA = 3


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def _normalize_label(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip().casefold()
    return normalized or None


def _score_industry(
    profile: OrganizationProfile,
    announcement: AnnouncementData,
) -> tuple[float, bool, list[ReasonCode], int]:
    sector = _normalize_label(profile.industry_sector)
    category = _normalize_label(announcement.category)
    if sector is None or category is None:
        return 0.0, False, [ReasonCode.INDUSTRY_UNKNOWN], 0
    if sector == category:
        return 1.0, True, [ReasonCode.INDUSTRY_MATCH, ReasonCode.EXACT_CATEGORY_MATCH], EXACT_CATEGORY_BONUS
    return 0.0, True, [ReasonCode.INDUSTRY_MISMATCH], 0


def _score_trl(
    profile: OrganizationProfile,
    announcement: AnnouncementData,
    tolerance: int,
) -> tuple[float, bool, list[ReasonCode]]:
    trl = profile.technology_readiness_level
    if trl is None:
        return 0.0, False, [ReasonCode.TRL_NOT_PROVIDED]
    if announcement.min_trl is None and announcement.max_trl is None:
        return 0.0, False, [ReasonCode.TRL_NO_REQUIREMENT]

    # A missing bound is open-ended
    distance = 0
    if announcement.min_trl is not None and trl < announcement.min_trl:
        distance = announcement.min_trl - trl
    elif announcement.max_trl is not None and trl > announcement.max_trl:
        distance = trl - announcement.max_trl

    if distance == 0:
        return 1.0, True, [ReasonCode.TRL_IN_RANGE]
    if distance <= tolerance:
        return 1.0 - distance / (tolerance + 1), True, [ReasonCode.TRL_ADJACENT]
    return 0.0, True, [ReasonCode.TRL_OUT_OF_RANGE]


def _score_organization_type(
    profile: OrganizationProfile,
    announcement: AnnouncementData,
) -> tuple[float, bool, list[ReasonCode]]:
    targets = {t.strip().upper() for t in announcement.target_types if t and t.strip()}
    if not targets or profile.type.value in targets:
        return 1.0, True, [ReasonCode.ORG_TYPE_ELIGIBLE]
    return 0.0, True, [ReasonCode.ORG_TYPE_INELIGIBLE]


def _score_rd_experience(
    profile: OrganizationProfile,
    announcement: AnnouncementData,
) -> tuple[float, bool, list[ReasonCode]]:
    flagged = announcement.rewards_rd_experience is True
    if profile.rd_experience:
        if flagged:
            return 1.0, True, [ReasonCode.RD_EXPERIENCE_REWARDED]
        return 2 / 3, True, [ReasonCode.RD_EXPERIENCE_PRESENT]
    if flagged:
        return 0.0, True, [ReasonCode.RD_EXPERIENCE_REQUIRED]
    return 1 / 3, True, [ReasonCode.RD_EXPERIENCE_ABSENT]


def _score_deadline(
    announcement: AnnouncementData,
    now: datetime,
) -> tuple[float, bool, list[ReasonCode]]:
    if announcement.deadline is None:
        return DEADLINE_UNKNOWN_FRACTION, False, [ReasonCode.DEADLINE_UNKNOWN]

    days_left = (announcement.deadline - now).total_seconds() / 86400
    if days_left < 0:
        return 0.0, True, [ReasonCode.DEADLINE_PASSED]
    if days_left >= DEADLINE_FULL_CREDIT_DAYS:
        return 1.0, True, [ReasonCode.DEADLINE_FAR]
    if days_left <= DEADLINE_URGENT_DAYS:
        return DEADLINE_URGENT_FRACTION, True, [ReasonCode.DEADLINE_URGENT]

    span = DEADLINE_FULL_CREDIT_DAYS - DEADLINE_URGENT_DAYS
    fraction = DEADLINE_URGENT_FRACTION + (1.0 - DEADLINE_URGENT_FRACTION) * (
        (days_left - DEADLINE_URGENT_DAYS) / span
    )
    return fraction, True, [ReasonCode.DEADLINE_MODERATE]


def _confidence(usable_criteria: int) -> ConfidenceLevel:
    if usable_criteria >= HIGH_CONFIDENCE_CRITERIA:
        return ConfidenceLevel.HIGH
    if usable_criteria >= MEDIUM_CONFIDENCE_CRITERIA:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def calculate_score(
    profile: OrganizationProfile,
    announcement: AnnouncementData,
    config: ScoringConfig,
    now: datetime,
    trl_tolerance: Optional[int] = None,
) -> ScoreResult:
    """
    Score one announcement for one organization.

    Pure and deterministic: identical inputs (including ``now``) always give
    identical score, breakdown and reason codes.

    Args:
        profile: Organization profile.
        announcement: Candidate announcement.
        config: Scoring configuration supplying criterion weights.
        now: Reference time for deadline proximity.
        trl_tolerance: Levels outside the TRL range that still earn
            partial credit. Defaults to the configured tolerance.

    Returns:
        ScoreResult with the 0-100 score, bonus, per-criterion points,
        reason codes and confidence.
    """
    tolerance = settings.trl_tolerance if trl_tolerance is None else trl_tolerance

    industry_fraction, industry_usable, industry_codes, bonus = _score_industry(profile, announcement)
    fractions = {
        Criterion.INDUSTRY: (industry_fraction, industry_usable, industry_codes),
        Criterion.TRL: _score_trl(profile, announcement, tolerance),
        Criterion.ORGANIZATION_TYPE: _score_organization_type(profile, announcement),
        Criterion.RD_EXPERIENCE: _score_rd_experience(profile, announcement),
        Criterion.DEADLINE_PROXIMITY: _score_deadline(announcement, now),
    }

    breakdown: dict[str, int] = {}
    max_points: dict[str, int] = {}
    reason_codes: list[ReasonCode] = []
    usable = 0

    for criterion in Criterion:
        fraction, is_usable, codes = fractions[criterion]
        weight = config.weight(criterion)
        breakdown[criterion.value] = _round_half_up(weight * fraction)
        max_points[criterion.value] = weight
        reason_codes.extend(codes)
        if is_usable:
            usable += 1

    total = sum(breakdown.values())
    score = _round_half_up(total * 100 / config.total_weight)

    return ScoreResult(
        score=max(0, min(100, score)),
        bonus=bonus,
        breakdown=breakdown,
        max_points=max_points,
        reason_codes=reason_codes,
        confidence=_confidence(usable),
    )
