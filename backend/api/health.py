"""
GrantMatch Health Check Endpoints
Liveness and readiness checks for the API and its dependencies.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.api.deps import Cache, DbSession
from backend.core.config import settings
from backend.services.cache import CacheStore
from engine.explanation.service import get_circuit_breaker

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    status: HealthStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseModel):
    status: HealthStatus
    timestamp: str
    components: dict[str, ComponentHealth]
    version: str


class LivenessResponse(BaseModel):
    status: str


def _timed(check: Callable[[], Optional[str]], failure: HealthStatus) -> ComponentHealth:
    """Run a check returning an error message (or None) and time it."""
    started = time.perf_counter()
    error = check()
    latency = round((time.perf_counter() - started) * 1000, 2)
    if error:
        return ComponentHealth(status=failure, latency_ms=latency, message=error)
    return ComponentHealth(status=HealthStatus.HEALTHY, latency_ms=latency)


def check_database(db) -> ComponentHealth:
    def ping() -> Optional[str]:
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return f"Database connection failed: {e}"
        return None

    return _timed(ping, HealthStatus.UNHEALTHY)


def check_cache(cache: CacheStore) -> ComponentHealth:
    """
    Ping the cache store.

    An unreachable cache degrades the service (quota checks fail closed and
    explanations skip the cache) but does not make it unhealthy.
    """
    return _timed(
        lambda: None if cache.ping() else "Cache store unreachable",
        HealthStatus.DEGRADED,
    )


def check_explanation_provider() -> ComponentHealth:
    snapshot = get_circuit_breaker().snapshot()
    if snapshot["state"] == "closed":
        return ComponentHealth(status=HealthStatus.HEALTHY, details=snapshot)
    return ComponentHealth(
        status=HealthStatus.DEGRADED,
        message="Explanations are served from templates",
        details=snapshot,
    )


def determine_overall_status(components: dict[str, ComponentHealth]) -> HealthStatus:
    """Unhealthy only when the database is; degraded when anything else is off."""
    database = components.get("database")
    if database and database.status == HealthStatus.UNHEALTHY:
        return HealthStatus.UNHEALTHY
    if any(component.status != HealthStatus.HEALTHY for component in components.values()):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", response_model=LivenessResponse, summary="Liveness check")
def basic_health() -> LivenessResponse:
    return LivenessResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness check",
    description="Checks the database, the cache store and the explanation circuit breaker.",
    responses={503: {"description": "Database unavailable"}},
)
def readiness_check(response: Response, db: DbSession, cache: Cache) -> HealthResponse:
    components = {
        "database": check_database(db),
        "cache": check_cache(cache),
        "explanations": check_explanation_provider(),
    }

    overall = determine_overall_status(components)
    if overall == HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components=components,
        version=settings.app_version,
    )
