"""
Sentry Error Tracking
SDK initialization for the API and Celery workers, plus helpers for
reporting exceptions and operational alerts with extra context.
"""

import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from backend.core.config import settings

logger = logging.getLogger(__name__)

_UNTRACED_PATHS = frozenset({"/health", "/health/ready"})


def _drop_health_checks(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    if event.get("transaction") in _UNTRACED_PATHS:
        return None
    return event


def init_sentry(service: str = "api") -> bool:
    """
    Initialize the Sentry SDK for one process type.

    Args:
        service: "api" or "worker"; sent as the ``service`` tag.

    Returns:
        True when a DSN is configured and the SDK started.
    """
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return False

    environment = settings.sentry_environment or settings.environment
    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=environment,
            release=f"grantmatch@{settings.app_version}",
            traces_sample_rate=settings.sentry_traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                CeleryIntegration(monitor_beat_tasks=True),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
                SqlalchemyIntegration(),
            ],
            before_send_transaction=_drop_health_checks,
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    sentry_sdk.set_tag("service", service)
    logger.info(f"Sentry initialized for {service} (env={environment})")
    return True


def capture_exception(error: BaseException, extra: Optional[dict[str, Any]] = None) -> Optional[str]:
    """Report an exception. Returns the Sentry event id, if one was sent."""
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)


def capture_message(
    message: str,
    level: str = "info",
    extra: Optional[dict[str, Any]] = None,
) -> Optional[str]:
    """
    Report an operational alert that is not an exception in the caller,
    e.g. a cache invalidation that gave up after its retries.

    Alerts are grouped by message so repeated failures of the same kind
    land on one issue.
    """
    with sentry_sdk.new_scope() as scope:
        scope.fingerprint = ["alert", message.split(" for ")[0]]
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message, level=level)
