"""
GrantMatch Cache Tasks

Background cache warming and invalidation.

Tasks:
    - warm_cache: Run a warming strategy (scheduled hourly with "smart")
    - invalidate_organization_cache: Evict one organization's entries
    - invalidate_announcement_cache: Evict entries referencing one announcement

Queues: normal (warming), high (invalidation)
"""

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from backend.api.deps import get_explanation_provider
from backend.celery_app import celery_app
from backend.database import get_sync_session
from backend.services.cache import CacheStore, get_cache_store
from engine.cache.invalidation import InvalidationController
from engine.cache.warming import CacheWarmer, WarmingParams, WarmingStrategy
from engine.explanation.budget import BudgetGate
from engine.explanation.service import ExplanationService, get_circuit_breaker
from engine.matching.repository import SqlAnnouncementCatalog, SqlMatchStore, SqlOrganizationStore

logger = logging.getLogger(__name__)


def build_cache_warmer(session: Session, cache: CacheStore) -> CacheWarmer:
    """Wire a CacheWarmer against a worker database session."""
    organizations = SqlOrganizationStore(session)
    catalog = SqlAnnouncementCatalog(session)
    matches = SqlMatchStore(session)
    explanations = ExplanationService(
        matches=matches,
        organizations=organizations,
        catalog=catalog,
        cache=cache,
        provider=get_explanation_provider(),
        breaker=get_circuit_breaker(),
        budget=BudgetGate(cache),
    )
    return CacheWarmer(
        cache=cache,
        organizations=organizations,
        catalog=catalog,
        matches=matches,
        explanations=explanations,
    )


@celery_app.task(
    name="backend.tasks.cache_warming.warm_cache",
    queue="normal",
    soft_time_limit=600,
    time_limit=900,
)
def warm_cache(strategy: str = "smart", params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """
    Run a cache warming strategy.

    Args:
        strategy: One of programs, organization, full, smart.
        params: WarmingParams fields as a JSON dict.

    Returns:
        dict: The WarmingReport.
    """
    warming_strategy = WarmingStrategy(strategy)
    warming_params = WarmingParams.model_validate(params or {})
    logger.info(f"Starting cache warming: strategy={warming_strategy.value}")

    with get_sync_session() as session:
        report = build_cache_warmer(session, get_cache_store()).warm(warming_strategy, warming_params)

    return report.model_dump(mode="json")


@celery_app.task(
    name="backend.tasks.cache_warming.invalidate_organization_cache",
    queue="high",
)
def invalidate_organization_cache(organization_id: str) -> dict[str, Any]:
    """Evict every cached entry of one organization."""
    report = InvalidationController(get_cache_store()).invalidate_organization(UUID(organization_id))
    return report.model_dump(mode="json")


@celery_app.task(
    name="backend.tasks.cache_warming.invalidate_announcement_cache",
    queue="high",
)
def invalidate_announcement_cache(announcement_id: str) -> dict[str, Any]:
    """Evict every cached explanation referencing one announcement."""
    report = InvalidationController(get_cache_store()).invalidate_announcement(UUID(announcement_id))
    return report.model_dump(mode="json")
