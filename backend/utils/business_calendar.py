"""
Business Calendar Utilities for GrantMatch.

Billing periods, the daily AI-spend counter and the ranking metrics window
all follow the business timezone (Asia/Seoul by default), not UTC:
- Billing period: calendar month in business time
- Spend day: calendar day in business time
- Metrics window: N whole business days ending at a business midnight
"""

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo

from backend.core.config import settings


class BillingPeriod(NamedTuple):
    key: str  # YYYY-MM
    start: datetime
    reset_at: datetime


@lru_cache
def business_tz(name: Optional[str] = None) -> ZoneInfo:
    """Return the configured business timezone."""
    return ZoneInfo(name or settings.business_timezone)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_business_time(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(business_tz())


def business_date(moment: datetime) -> date:
    """Calendar date of ``moment`` in business time."""
    return to_business_time(moment).date()


def business_day_key(moment: datetime) -> str:
    return business_date(moment).isoformat()


def start_of_business_day(moment: datetime) -> datetime:
    """Business midnight on or before ``moment``, in UTC."""
    local = datetime.combine(business_date(moment), time.min, tzinfo=business_tz())
    return local.astimezone(timezone.utc)


def billing_period(moment: datetime) -> BillingPeriod:
    """
    Billing period containing ``moment``.

    Args:
        moment: Any aware datetime.

    Returns:
        BillingPeriod with the YYYY-MM key and the UTC start/reset instants.
    """
    local = to_business_time(moment)
    start_local = datetime(local.year, local.month, 1, tzinfo=business_tz())
    if local.month == 12:
        next_local = datetime(local.year + 1, 1, 1, tzinfo=business_tz())
    else:
        next_local = datetime(local.year, local.month + 1, 1, tzinfo=business_tz())
    return BillingPeriod(
        key=f"{local.year:04d}-{local.month:02d}",
        start=start_local.astimezone(timezone.utc),
        reset_at=next_local.astimezone(timezone.utc),
    )


def business_day_window(end: datetime, days: int) -> tuple[datetime, datetime]:
    """
    Window of ``days`` whole business days ending at the business midnight
    on or before ``end``.

    Returns:
        (window_start, window_end) in UTC.
    """
    window_end = start_of_business_day(end)
    return window_end - timedelta(days=days), window_end


def seconds_until(target: datetime, now: datetime) -> int:
    return max(1, int((target - now).total_seconds()))
