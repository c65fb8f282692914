"""
Matching Engine Pydantic Models
Data models for eligibility, scoring, generation and explanations.
"""
import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from backend.core.config import settings
from backend.models import (
    AnnouncementStatus,
    AnnouncementType,
    OrganizationType,
    PlanTier,
)

TRLValue = Annotated[StrictInt, Field(ge=0, le=9)]


class Criterion(str, Enum):
    """Scoring criteria, in breakdown order."""

    INDUSTRY = "industry"
    TRL = "trl"
    ORGANIZATION_TYPE = "organization_type"
    RD_EXPERIENCE = "rd_experience"
    DEADLINE_PROXIMITY = "deadline_proximity"


class ReasonCode(str, Enum):
    EXACT_CATEGORY_MATCH = "EXACT_CATEGORY_MATCH"
    INDUSTRY_MATCH = "INDUSTRY_MATCH"
    INDUSTRY_MISMATCH = "INDUSTRY_MISMATCH"
    INDUSTRY_UNKNOWN = "INDUSTRY_UNKNOWN"
    TRL_IN_RANGE = "TRL_IN_RANGE"
    TRL_ADJACENT = "TRL_ADJACENT"
    TRL_OUT_OF_RANGE = "TRL_OUT_OF_RANGE"
    TRL_NOT_PROVIDED = "TRL_NOT_PROVIDED"
    TRL_NO_REQUIREMENT = "TRL_NO_REQUIREMENT"
    ORG_TYPE_ELIGIBLE = "ORG_TYPE_ELIGIBLE"
    ORG_TYPE_INELIGIBLE = "ORG_TYPE_INELIGIBLE"
    RD_EXPERIENCE_REWARDED = "RD_EXPERIENCE_REWARDED"
    RD_EXPERIENCE_PRESENT = "RD_EXPERIENCE_PRESENT"
    RD_EXPERIENCE_ABSENT = "RD_EXPERIENCE_ABSENT"
    RD_EXPERIENCE_REQUIRED = "RD_EXPERIENCE_REQUIRED"
    DEADLINE_FAR = "DEADLINE_FAR"
    DEADLINE_MODERATE = "DEADLINE_MODERATE"
    DEADLINE_URGENT = "DEADLINE_URGENT"
    DEADLINE_PASSED = "DEADLINE_PASSED"
    DEADLINE_UNKNOWN = "DEADLINE_UNKNOWN"


class ConfidenceLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ExclusionReason(str, Enum):
    """Why the eligibility filter dropped an announcement."""

    INACTIVE = "INACTIVE"
    NOT_RD_PROJECT = "NOT_RD_PROJECT"
    ORG_TYPE = "ORG_TYPE"
    BUSINESS_STRUCTURE = "BUSINESS_STRUCTURE"
    TRL_RANGE = "TRL_RANGE"
    DEADLINE_PASSED = "DEADLINE_PASSED"


class GenerationState(str, Enum):
    QUOTA_CHECK = "QUOTA_CHECK"
    FETCH_CANDIDATES = "FETCH_CANDIDATES"
    FILTER = "FILTER"
    SCORE_ALL = "SCORE_ALL"
    RANK_TOP_K = "RANK_TOP_K"
    PERSIST = "PERSIST"
    QUOTA_INCREMENT = "QUOTA_INCREMENT"
    DONE = "DONE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    NO_CANDIDATES = "NO_CANDIDATES"


class ExplanationSource(str, Enum):
    AI = "AI"
    TEMPLATE = "TEMPLATE"


class FallbackReason(str, Enum):
    """Why a templated explanation was served instead of an AI one."""

    BUDGET_EXHAUSTED = "BUDGET_EXHAUSTED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NOT_CONFIGURED = "NOT_CONFIGURED"


DEFAULT_WEIGHTS: dict[str, int] = {
    Criterion.INDUSTRY.value: 30,
    Criterion.TRL.value: 20,
    Criterion.ORGANIZATION_TYPE.value: 20,
    Criterion.RD_EXPERIENCE.value: 15,
    Criterion.DEADLINE_PROXIMITY.value: 15,
}


class ScoringConfig(BaseModel):
    """
    Immutable, named set of criterion weights.

    The name combines the version with a short hash of the canonical weights,
    so any weight change produces a new name. Metrics are joined on it.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., min_length=1)
    weights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, weights: dict[str, int]) -> dict[str, int]:
        missing = [c.value for c in Criterion if c.value not in weights]
        if missing:
            raise ValueError(f"missing weights for criteria: {', '.join(missing)}")
        known = {c.value for c in Criterion}
        unknown = sorted(key for key in weights if key not in known)
        if unknown:
            raise ValueError(f"unknown scoring criteria: {', '.join(unknown)}")
        if any(w < 0 for w in weights.values()):
            raise ValueError("weights must be non-negative")
        if sum(weights.values()) <= 0:
            raise ValueError("weights must not all be zero")
        return dict(sorted(weights.items()))

    @property
    def name(self) -> str:
        canonical = json.dumps(self.weights, sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:8]
        return f"{self.version}-{digest}"

    @property
    def total_weight(self) -> int:
        return sum(self.weights.values())

    def weight(self, criterion: Criterion) -> int:
        return self.weights[criterion.value]


def default_scoring_config() -> ScoringConfig:
    """Scoring config for the currently deployed version."""
    return ScoringConfig(version=settings.scoring_version)


class OrganizationProfile(BaseModel):
    """
    Organization profile as seen by the matching engine.

    ``technology_readiness_level`` is a strict integer: floats and numeric
    strings are rejected rather than coerced.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str = ""
    type: OrganizationType
    industry_sector: Optional[str] = None
    employee_count_band: Optional[str] = None
    technology_readiness_level: Optional[TRLValue] = None
    rd_experience: bool = False
    business_structure: Optional[str] = None
    certifications: list[str] = Field(default_factory=list)
    research_focus_areas: list[str] = Field(default_factory=list)
    updated_at: datetime
    last_active_at: Optional[datetime] = None


class AnnouncementData(BaseModel):
    """Read-only view of a catalog announcement."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agency_id: str
    title: str = ""
    category: Optional[str] = None
    min_trl: Optional[int] = None
    max_trl: Optional[int] = None
    target_types: list[str] = Field(default_factory=list)
    allowed_business_structures: list[str] = Field(default_factory=list)
    rewards_rd_experience: Optional[bool] = Field(
        default=None,
        description="True when the announcement requires or rewards prior R&D experience",
    )
    deadline: Optional[datetime] = None
    published_at: Optional[datetime] = None
    status: AnnouncementStatus = AnnouncementStatus.ACTIVE
    announcement_type: AnnouncementType = AnnouncementType.UNKNOWN
    updated_at: Optional[datetime] = None


class ScoreResult(BaseModel):
    """Output of the score calculator for one (organization, announcement) pair."""

    score: int = Field(..., ge=0, le=100, description="Weighted score normalized to 0-100")
    bonus: int = Field(default=0, ge=0, description="Bonus points tracked outside the 0-100 scale")
    breakdown: dict[str, int] = Field(default_factory=dict, description="Criterion -> points")
    max_points: dict[str, int] = Field(default_factory=dict, description="Criterion -> configured weight")
    reason_codes: list[ReasonCode] = Field(default_factory=list)
    confidence: ConfidenceLevel

    @property
    def rank_score(self) -> int:
        return self.score + self.bonus


class ExcludedAnnouncement(BaseModel):
    announcement_id: UUID
    reason: ExclusionReason


class EligibilityResult(BaseModel):
    eligible: list[AnnouncementData] = Field(default_factory=list)
    excluded: list[ExcludedAnnouncement] = Field(default_factory=list)


class ScoredCandidate(BaseModel):
    announcement: AnnouncementData
    result: ScoreResult


class QuotaStatus(BaseModel):
    """Usage of the generation quota for the current billing period."""

    plan: PlanTier
    limit: Optional[int] = Field(default=None, description="None means unlimited")
    used: int = 0
    remaining: Optional[int] = None
    reset_at: datetime
    seat_limit: Optional[int] = None


class MatchExplanation(BaseModel):
    """Closed explanation structure attached to every match."""

    summary: str
    breakdown: dict[str, int] = Field(default_factory=dict)
    reasons: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    source: ExplanationSource
    fallback_reason: Optional[FallbackReason] = None


class MatchView(BaseModel):
    """A persisted match as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    announcement_id: UUID
    title: str = ""
    score: int
    bonus: int = 0
    breakdown: dict[str, int] = Field(default_factory=dict)
    reason_codes: list[str] = Field(default_factory=list)
    confidence: ConfidenceLevel
    explanation: Optional[MatchExplanation] = None
    config_name: str
    rank_position: Optional[int] = None
    deadline: Optional[datetime] = None
    saved: bool = False
    viewed: bool = False


class GenerationResult(BaseModel):
    state: GenerationState
    organization_id: UUID
    session_id: Optional[UUID] = None
    config_name: str
    matches: list[MatchView] = Field(default_factory=list)
    quota: QuotaStatus
    excluded_count: int = 0
    failed_count: int = 0


class ExplanationResponse(BaseModel):
    match_id: UUID
    explanation: MatchExplanation
    cached: bool
