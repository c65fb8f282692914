"""
FastAPI Dependencies
Shared dependencies for database access, the cache store, engine services
and admin authentication.
"""
import logging
import secrets
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from backend.core.config import settings
from backend.database import get_db
from backend.services.cache import CacheStore, get_cache_store
from engine.cache.invalidation import InvalidationController
from engine.cache.warming import CacheWarmer
from engine.explanation.budget import BudgetGate
from engine.explanation.provider import AnthropicExplanationProvider, ExplanationProvider
from engine.explanation.service import ExplanationService, get_circuit_breaker
from engine.matching.engagement import EngagementService
from engine.matching.generator import MatchGenerator
from engine.matching.profiles import ProfileService
from engine.matching.quota import QuotaManager
from engine.matching.repository import (
    SqlAnnouncementCatalog,
    SqlMatchStore,
    SqlOrganizationStore,
    SqlPlanStore,
)
from engine.metrics.collector import RankingMetricsCollector

logger = logging.getLogger(__name__)

DbSession = Annotated[Session, Depends(get_db)]
Cache = Annotated[CacheStore, Depends(get_cache_store)]


# =============================================================================
# Admin Authentication
# =============================================================================

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


def require_admin(api_key: Annotated[Optional[str], Security(admin_key_header)]) -> None:
    """Reject admin calls without the configured key. Open when no key is configured."""
    if not settings.admin_api_key:
        return
    if not api_key or not secrets.compare_digest(api_key, settings.admin_api_key):
        logger.warning("Rejected admin request with missing or invalid key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )


AdminAccess = Depends(require_admin)


# =============================================================================
# Engine Services
# =============================================================================


@lru_cache
def get_explanation_provider() -> Optional[ExplanationProvider]:
    """Anthropic provider when an API key is configured, otherwise None (templates only)."""
    if not settings.anthropic_api_key:
        logger.info("No Anthropic API key configured, explanations use templates")
        return None
    return AnthropicExplanationProvider()


def get_match_generator(db: DbSession, cache: Cache) -> MatchGenerator:
    return MatchGenerator(
        organizations=SqlOrganizationStore(db),
        catalog=SqlAnnouncementCatalog(db),
        plans=SqlPlanStore(db),
        matches=SqlMatchStore(db),
        quota=QuotaManager(cache),
        cache=cache,
    )


def get_quota_manager(cache: Cache) -> QuotaManager:
    return QuotaManager(cache)


def get_explanation_service(
    db: DbSession,
    cache: Cache,
    provider: Annotated[Optional[ExplanationProvider], Depends(get_explanation_provider)],
) -> ExplanationService:
    return ExplanationService(
        matches=SqlMatchStore(db),
        organizations=SqlOrganizationStore(db),
        catalog=SqlAnnouncementCatalog(db),
        cache=cache,
        provider=provider,
        breaker=get_circuit_breaker(),
        budget=BudgetGate(cache),
    )


def get_invalidation_controller(db: DbSession, cache: Cache) -> InvalidationController:
    return InvalidationController(
        cache=cache,
        catalog=SqlAnnouncementCatalog(db),
        matches=SqlMatchStore(db),
    )


def get_profile_service(
    db: DbSession,
    invalidation: Annotated[InvalidationController, Depends(get_invalidation_controller)],
) -> ProfileService:
    return ProfileService(db, invalidation)


def get_engagement_service(db: DbSession, cache: Cache) -> EngagementService:
    return EngagementService(db, cache=cache)


def get_cache_warmer(
    db: DbSession,
    cache: Cache,
    explanations: Annotated[ExplanationService, Depends(get_explanation_service)],
) -> CacheWarmer:
    return CacheWarmer(
        cache=cache,
        organizations=SqlOrganizationStore(db),
        catalog=SqlAnnouncementCatalog(db),
        matches=SqlMatchStore(db),
        explanations=explanations,
    )


def get_metrics_collector(db: DbSession) -> RankingMetricsCollector:
    return RankingMetricsCollector(db)
