"""
GrantMatch Celery Application

Background work for the match engine:
    - high queue: cache invalidation, which must not wait behind batch jobs
    - normal queue: cache warming and the daily ranking metrics batch

Beat schedule:
    - smart cache warming every hour
    - ranking metrics at 00:30 business time, after the business day closes
"""

import logging
import time
from datetime import timedelta
from typing import Any, Optional

from celery import Celery, Task
from celery.schedules import crontab
from celery.signals import task_postrun, task_prerun, task_retry, worker_process_init
from kombu import Exchange, Queue
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)

TASK_MODULES = ["backend.tasks.cache_warming", "backend.tasks.ranking_metrics"]

TASK_QUEUES = (
    Queue("high", Exchange("priority", type="direct"), routing_key="high", queue_arguments={"x-max-priority": 7}),
    Queue("normal", Exchange("default", type="direct"), routing_key="normal", queue_arguments={"x-max-priority": 3}),
)

TASK_ROUTES = {
    "backend.tasks.cache_warming.invalidate_*": {"queue": "high"},
    "backend.tasks.cache_warming.warm_cache": {"queue": "normal"},
    "backend.tasks.ranking_metrics.*": {"queue": "normal"},
}

BEAT_SCHEDULE = {
    "smart-cache-warm": {
        "task": "backend.tasks.cache_warming.warm_cache",
        "schedule": timedelta(hours=1),
        "args": ("smart",),
    },
    "ranking-metrics-daily": {
        "task": "backend.tasks.ranking_metrics.compute_ranking_metrics",
        "schedule": crontab(hour=0, minute=30),
    },
}


class BaseTaskWithRetry(Task):
    """
    Default task base: storage and cache outages are retried with jittered
    exponential backoff, anything else (bad input, unknown ids) fails at once.
    """

    autoretry_for = (SQLAlchemyError, CacheUnavailableError)
    max_retries = 3
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.error(
            f"Task {self.name}[{task_id}] failed after {self.request.retries} retries: {exc}",
            exc_info=True,
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)


def create_celery_app() -> Celery:
    """Create the Celery application with queues, routes and the beat schedule."""
    app = Celery(
        "grantmatch",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=TASK_MODULES,
        task_cls=BaseTaskWithRetry,
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        result_expires=86400,
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="normal",
        task_default_exchange="default",
        task_default_routing_key="normal",
        task_soft_time_limit=300,
        task_time_limit=600,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        # Crontab entries are evaluated in business time
        timezone=settings.business_timezone,
        enable_utc=True,
        broker_connection_retry_on_startup=True,
        beat_schedule=BEAT_SCHEDULE,
    )
    return app


celery_app = create_celery_app()


# =============================================================================
# Worker Hooks
# =============================================================================

_started_at: dict[str, float] = {}


@worker_process_init.connect
def init_worker_process(**kwargs: Any) -> None:
    """Configure logging and error tracking in each worker process."""
    from backend.core.logging import configure_logging
    from backend.core.sentry import init_sentry

    configure_logging()
    init_sentry("worker")


@task_prerun.connect
def record_task_start(task_id: Optional[str] = None, **kwargs: Any) -> None:
    if task_id:
        _started_at[task_id] = time.monotonic()


@task_postrun.connect
def log_task_duration(
    sender: Optional[Task] = None,
    task_id: Optional[str] = None,
    state: Optional[str] = None,
    **kwargs: Any,
) -> None:
    started = _started_at.pop(task_id, None) if task_id else None
    if started is not None:
        name = sender.name if sender else "unknown"
        logger.info(f"Task {name}[{task_id}] finished in {time.monotonic() - started:.3f}s state={state}")


@task_retry.connect
def log_task_retry(sender: Optional[Task] = None, request: Any = None, reason: Any = None, **kwargs: Any) -> None:
    task_id = request.id if request else "unknown"
    logger.warning(f"Task {sender.name if sender else 'unknown'}[{task_id}] retrying: {reason}")


__all__ = [
    "celery_app",
    "BaseTaskWithRetry",
]
