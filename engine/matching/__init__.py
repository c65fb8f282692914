"""
Matching Module
Eligibility filtering, weighted scoring and ranking of R&D announcements
against an organization profile.
"""
from .eligibility import check_eligibility, deduplicate_announcements, filter_eligible
from .models import (
    AnnouncementData,
    ConfidenceLevel,
    EligibilityResult,
    GenerationResult,
    MatchView,
    OrganizationProfile,
    ReasonCode,
    ScoreResult,
    ScoringConfig,
    default_scoring_config,
)
from .scorer import calculate_score

__all__ = [
    # Scoring
    "calculate_score",
    "ScoringConfig",
    "default_scoring_config",
    # Eligibility
    "check_eligibility",
    "filter_eligible",
    "deduplicate_announcements",
    # Models
    "AnnouncementData",
    "ConfidenceLevel",
    "EligibilityResult",
    "GenerationResult",
    "MatchView",
    "OrganizationProfile",
    "ReasonCode",
    "ScoreResult",
]
