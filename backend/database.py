"""
GrantMatch Database Connection Setup
Provides the sync database engine and session factories with connection pooling.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from backend.core.config import settings
from backend.models import Base


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Session scope for Celery tasks: commit on success, roll back on error.

    Usage:
        with get_sync_session() as session:
            RankingMetricsCollector(session).compute_metrics(start, end)
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, committed when the handler returns."""
    with get_sync_session() as session:
        yield session


def init_db() -> None:
    """
    Create all tables.

    Development and testing only; production schemas are managed by migrations.
    """
    Base.metadata.create_all(bind=engine)


def close_db() -> None:
    """Dispose of pooled connections. Call during shutdown."""
    engine.dispose()

