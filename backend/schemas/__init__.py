"""
GrantMatch Pydantic Schemas
Request/Response models for API endpoints.
"""
from backend.schemas.admin import ReclassifyRequest, WarmCacheQueued, WarmCacheRequest
from backend.schemas.matches import (
    ExplanationResult,
    GenerateMatchesResponse,
    MatchList,
    ProfileUpdateResponse,
    SaveMatchRequest,
)

__all__ = [
    # Matches
    "ExplanationResult",
    "GenerateMatchesResponse",
    "MatchList",
    "ProfileUpdateResponse",
    "SaveMatchRequest",
    # Admin
    "ReclassifyRequest",
    "WarmCacheQueued",
    "WarmCacheRequest",
]
