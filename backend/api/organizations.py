"""
Organization API Endpoints
Generate matches, read the ranked match list, and update the profile.
"""
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from backend.api.deps import (
    Cache,
    DbSession,
    get_match_generator,
    get_profile_service,
    get_quota_manager,
)
from backend.core.exceptions import OrganizationNotFoundError
from backend.schemas.matches import GenerateMatchesResponse, MatchList, ProfileUpdateResponse
from backend.utils.business_calendar import utcnow
from engine.cache.warming import read_match_list
from engine.matching.generator import MatchGenerator
from engine.matching.profiles import ProfileService, ProfileUpdate
from engine.matching.quota import QuotaManager
from engine.matching.repository import SqlMatchStore, SqlOrganizationStore, SqlPlanStore

router = APIRouter(prefix="/api/organizations", tags=["Organizations"])


@router.post(
    "/{organization_id}/matches/generate",
    response_model=GenerateMatchesResponse,
    summary="Generate matches",
    description="Score the announcement catalog for an organization and persist the top matches. "
    "Returns 429 when the plan's generation quota is used up.",
)
def generate_matches(
    organization_id: UUID,
    generator: Annotated[MatchGenerator, Depends(get_match_generator)],
) -> GenerateMatchesResponse:
    result = generator.generate_matches(organization_id)
    return GenerateMatchesResponse(
        state=result.state,
        session_id=result.session_id,
        config_name=result.config_name,
        matches=result.matches,
        quota=result.quota,
        excluded_count=result.excluded_count,
        failed_count=result.failed_count,
    )


@router.get(
    "/{organization_id}/matches",
    response_model=MatchList,
    summary="List matches",
    description="Ranked matches from the latest generation, served through the match cache.",
)
def list_matches(
    organization_id: UUID,
    db: DbSession,
    cache: Cache,
    quota: Annotated[QuotaManager, Depends(get_quota_manager)],
    limit: Optional[int] = Query(default=None, ge=1, le=100, description="Maximum matches to return"),
) -> MatchList:
    if SqlOrganizationStore(db).get_updated_at(organization_id) is None:
        raise OrganizationNotFoundError(str(organization_id))

    matches, cached = read_match_list(cache, SqlMatchStore(db), organization_id, limit=limit)
    plan, seat_limit = SqlPlanStore(db).get_plan(organization_id)
    return MatchList(
        matches=matches,
        total=len(matches),
        cached=cached,
        quota=quota.status(organization_id, plan, utcnow(), seat_limit=seat_limit),
    )


@router.patch(
    "/{organization_id}/profile",
    response_model=ProfileUpdateResponse,
    summary="Update profile",
    description="Partially update an organization profile and invalidate its cached explanations.",
)
def update_profile(
    organization_id: UUID,
    update: ProfileUpdate,
    profiles: Annotated[ProfileService, Depends(get_profile_service)],
) -> ProfileUpdateResponse:
    result = profiles.update_profile(organization_id, update)
    return ProfileUpdateResponse(
        profile=result.profile,
        changed_fields=result.changed_fields,
        material_change=result.material_change,
        matches_removed=result.matches_removed,
        cache_invalidated=result.invalidation.completed if result.invalidation else True,
    )
