"""
Match schemas for organization-announcement match results.
"""
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from engine.matching.models import (
    GenerationState,
    MatchExplanation,
    MatchView,
    OrganizationProfile,
    QuotaStatus,
)


class GenerateMatchesResponse(BaseModel):
    """Schema for a completed match generation."""

    state: GenerationState = Field(..., description="Terminal state of the generation")
    session_id: Optional[UUID] = Field(None, description="Generation session ID (None when nothing was generated)")
    config_name: str = Field(..., description="Scoring config used for ranking")
    matches: list[MatchView] = Field(default_factory=list, description="Ranked matches")
    quota: QuotaStatus = Field(..., description="Quota usage after this generation")
    excluded_count: int = Field(0, description="Announcements removed by eligibility rules")
    failed_count: int = Field(0, description="Candidates dropped because scoring failed")


class MatchList(BaseModel):
    """Schema for the cached ranked match list."""

    matches: list[MatchView] = Field(default_factory=list, description="Ranked matches")
    total: int = Field(..., description="Number of matches returned")
    cached: bool = Field(..., description="Served from the warmed cache")
    quota: QuotaStatus = Field(..., description="Current quota usage")


class SaveMatchRequest(BaseModel):
    """Schema for toggling the saved flag."""

    saved: bool = Field(True, description="Whether the match should be saved")


class ExplanationResult(BaseModel):
    """Schema for a match explanation."""

    match_id: UUID = Field(..., description="Match ID")
    explanation: MatchExplanation = Field(..., description="Structured explanation")
    cached: bool = Field(..., description="Served from the explanation cache")


class ProfileUpdateResponse(BaseModel):
    """Schema for the result of a profile update."""

    profile: OrganizationProfile = Field(..., description="Updated profile")
    changed_fields: list[str] = Field(default_factory=list, description="Fields that changed")
    material_change: bool = Field(..., description="Whether the change affects matching")
    matches_removed: int = Field(0, description="Unsaved matches removed after a material change")
    cache_invalidated: bool = Field(..., description="Whether cache invalidation completed")
