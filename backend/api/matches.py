"""
Match API Endpoints
Explanations and engagement actions on individual matches.
"""
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends

from backend.api.deps import get_engagement_service, get_explanation_service
from backend.schemas.matches import ExplanationResult, SaveMatchRequest
from engine.explanation.service import ExplanationService
from engine.matching.engagement import EngagementService
from engine.matching.models import MatchView

router = APIRouter(prefix="/api/matches", tags=["Matches"])


@router.get(
    "/{match_id}/explanation",
    response_model=ExplanationResult,
    summary="Get match explanation",
    description="AI explanation for a match. Falls back to a labelled template when the "
    "provider is unavailable, over budget, or the circuit is open.",
)
def get_explanation(
    match_id: UUID,
    service: Annotated[ExplanationService, Depends(get_explanation_service)],
) -> ExplanationResult:
    response = service.get_explanation(match_id)
    return ExplanationResult(
        match_id=response.match_id,
        explanation=response.explanation,
        cached=response.cached,
    )


@router.post(
    "/{match_id}/save",
    response_model=MatchView,
    summary="Save or unsave a match",
)
def save_match(
    match_id: UUID,
    engagement: Annotated[EngagementService, Depends(get_engagement_service)],
    request: SaveMatchRequest = SaveMatchRequest(),
) -> MatchView:
    return engagement.set_saved(match_id, request.saved)


@router.post(
    "/{match_id}/view",
    response_model=MatchView,
    summary="Mark a match as viewed",
)
def view_match(
    match_id: UUID,
    engagement: Annotated[EngagementService, Depends(get_engagement_service)],
) -> MatchView:
    return engagement.mark_viewed(match_id)
