"""
GrantMatch Test Configuration and Fixtures
Shared pytest fixtures for all test modules.
"""
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Generator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from backend.models import (
    Announcement,
    AnnouncementStatus,
    AnnouncementType,
    Base,
    Organization,
    OrganizationType,
    PlanTier,
    Subscription,
)
from backend.services.cache import InMemoryCacheStore
from engine.matching.models import AnnouncementData, OrganizationProfile


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def sync_engine():
    """Create a sync SQLite engine for testing."""
    # Use a unique temp file for each test to ensure complete isolation
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        echo=False,
    )

    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture(scope="function")
def session_factory(sync_engine) -> sessionmaker:
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a sync session for testing."""
    session = session_factory()

    yield session

    session.rollback()
    session.close()


# =============================================================================
# Cache Fixtures
# =============================================================================


class FakeClock:
    """Manually advanced time source for TTL and breaker tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_store() -> InMemoryCacheStore:
    """Provide an in-memory cache store for testing."""
    return InMemoryCacheStore()


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def fixed_now() -> datetime:
    """A fixed reference instant (2026-03-10 12:00 KST)."""
    return datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def sample_profile(fixed_now) -> OrganizationProfile:
    """ICT company at TRL 7 without prior R&D experience."""
    return OrganizationProfile(
        id=uuid.uuid4(),
        name="Hanbit Systems",
        type=OrganizationType.COMPANY,
        industry_sector="ICT",
        technology_readiness_level=7,
        rd_experience=False,
        business_structure="SME",
        updated_at=fixed_now - timedelta(days=10),
    )


@pytest.fixture
def make_announcement_data(fixed_now) -> Callable[..., AnnouncementData]:
    """Factory for catalog announcements as seen by the engine."""

    def _make(**overrides: Any) -> AnnouncementData:
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "agency_id": "KEIT",
            "title": f"ICT Core Technology Program {uuid.uuid4().hex[:6]}",
            "category": "ICT",
            "min_trl": 5,
            "max_trl": 8,
            "target_types": ["COMPANY"],
            "deadline": fixed_now + timedelta(days=60),
            "published_at": fixed_now - timedelta(days=3),
            "status": AnnouncementStatus.ACTIVE,
            "announcement_type": AnnouncementType.R_D_PROJECT,
        }
        values.update(overrides)
        return AnnouncementData(**values)

    return _make


@pytest.fixture
def make_organization(db_session) -> Callable[..., Organization]:
    """Factory persisting an organization row."""

    def _make(**overrides: Any) -> Organization:
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "name": "Hanbit Systems",
            "type": OrganizationType.COMPANY,
            "industry_sector": "ICT",
            "technology_readiness_level": 7,
            "rd_experience": False,
            "business_structure": "SME",
            "certifications": [],
            "research_focus_areas": ["edge computing"],
            "updated_at": datetime.now(timezone.utc) - timedelta(days=1),
        }
        values.update(overrides)
        organization = Organization(**values)
        db_session.add(organization)
        db_session.commit()
        return organization

    return _make


@pytest.fixture
def make_announcement(db_session) -> Callable[..., Announcement]:
    """Factory persisting an announcement row."""

    def _make(**overrides: Any) -> Announcement:
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "agency_id": "KEIT",
            "title": f"ICT Core Technology Program {uuid.uuid4().hex[:6]}",
            "category": "ICT",
            "min_trl": 5,
            "max_trl": 8,
            "target_types": ["COMPANY"],
            "allowed_business_structures": [],
            "deadline": now + timedelta(days=90),
            "published_at": now - timedelta(days=3),
            "status": AnnouncementStatus.ACTIVE,
            "announcement_type": AnnouncementType.R_D_PROJECT,
        }
        values.update(overrides)
        announcement = Announcement(**values)
        db_session.add(announcement)
        db_session.commit()
        return announcement

    return _make


@pytest.fixture
def make_subscription(db_session) -> Callable[..., Subscription]:
    def _make(organization_id: uuid.UUID, plan: PlanTier = PlanTier.PRO, seat_limit=None) -> Subscription:
        subscription = Subscription(organization_id=organization_id, plan=plan, seat_limit=seat_limit)
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


# =============================================================================
# API Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(session_factory, cache_store) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and cache store."""
    from backend.api.deps import get_explanation_provider
    from backend.database import get_db
    from backend.main import app
    from backend.services.cache import get_cache_store

    def override_get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_store] = lambda: cache_store
    app.dependency_overrides[get_explanation_provider] = lambda: None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
