"""
Generation Quota Enforcement

Per-organization, per-billing-period generation quota. Admission uses a
reservation protocol executed atomically in the cache store:

1. reserve  - admitted iff committed + live reservations < plan limit
2. renew    - just before persisting, the reservation lifetime restarts
3. commit   - after matches are persisted, the reservation becomes usage;
              an expired reservation is charged only if it still fits
4. release  - on any failure or cancellation, the reservation is dropped

Committed usage only ever increases within a period, and concurrent callers
can never overshoot the limit. A reservation left behind by a crashed worker
stops counting once its TTL expires.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog

from backend.core.config import settings
from backend.core.exceptions import QuotaExceededError
from backend.models import PlanTier
from backend.services.cache import CacheStore
from backend.utils.business_calendar import BillingPeriod, billing_period, seconds_until

from .models import QuotaStatus

logger = structlog.get_logger().bind(component="quota")

# Period keys outlive the period so late commits still land in the right bucket
PERIOD_KEY_GRACE = timedelta(days=7)


def used_key(organization_id: UUID, period_key: str) -> str:
    return f"quota:used:{organization_id}:{period_key}"


def pending_key(organization_id: UUID, period_key: str) -> str:
    return f"quota:pending:{organization_id}:{period_key}"


@dataclass(frozen=True)
class QuotaReservation:
    """Handle for an admitted generation. ``token`` is None for unlimited plans."""

    organization_id: UUID
    plan: PlanTier
    period: BillingPeriod
    token: Optional[str]
    seat_limit: Optional[int] = None


class QuotaManager:
    """Plan limits and atomic quota accounting on top of a CacheStore."""

    def __init__(
        self,
        cache: CacheStore,
        free_limit: Optional[int] = None,
        reservation_ttl_seconds: Optional[int] = None,
    ):
        self.cache = cache
        self.free_limit = settings.free_plan_monthly_generations if free_limit is None else free_limit
        self.reservation_ttl_seconds = (
            reservation_ttl_seconds
            if reservation_ttl_seconds is not None
            else settings.quota_reservation_ttl_seconds
        )

    def limit_for(self, plan: PlanTier) -> Optional[int]:
        """Monthly generation limit for a plan; None means unlimited."""
        if plan == PlanTier.FREE:
            return self.free_limit
        # PRO is unlimited; TEAM is unlimited but seat-capped elsewhere
        return None

    def _key_ttl(self, period: BillingPeriod, now: datetime) -> int:
        return seconds_until(period.reset_at + PERIOD_KEY_GRACE, now)

    def _status(
        self,
        plan: PlanTier,
        period: BillingPeriod,
        used: int,
        seat_limit: Optional[int],
    ) -> QuotaStatus:
        limit = self.limit_for(plan)
        return QuotaStatus(
            plan=plan,
            limit=limit,
            used=used,
            remaining=None if limit is None else max(0, limit - used),
            reset_at=period.reset_at,
            seat_limit=seat_limit,
        )

    def status(
        self,
        organization_id: UUID,
        plan: PlanTier,
        now: datetime,
        seat_limit: Optional[int] = None,
    ) -> QuotaStatus:
        """Current committed usage for the period containing ``now``."""
        period = billing_period(now)
        used = self.cache.get_int(used_key(organization_id, period.key))
        return self._status(plan, period, used, seat_limit)

    def reserve(
        self,
        organization_id: UUID,
        plan: PlanTier,
        now: datetime,
        seat_limit: Optional[int] = None,
    ) -> QuotaReservation:
        """
        Reserve one generation for the organization.

        Raises:
            QuotaExceededError: If the plan limit for the period is reached.
                Nothing is charged on this path.
        """
        period = billing_period(now)
        if self.limit_for(plan) is None:
            return QuotaReservation(organization_id, plan, period, None, seat_limit)

        reservation = QuotaReservation(organization_id, plan, period, uuid.uuid4().hex, seat_limit)
        self._hold(reservation, now)
        return reservation

    def renew(self, reservation: QuotaReservation, now: datetime) -> None:
        """
        Restart the lifetime of a held reservation.

        A reservation that already expired is re-admitted only if the period
        still has room for it.

        Raises:
            QuotaExceededError: If the reservation expired and the limit has
                since been reached.
        """
        if reservation.token is not None:
            self._hold(reservation, now)

    def _hold(self, reservation: QuotaReservation, now: datetime) -> None:
        period = reservation.period
        limit = self.limit_for(reservation.plan)
        admitted = self.cache.reserve_slot(
            used_key(reservation.organization_id, period.key),
            pending_key(reservation.organization_id, period.key),
            reservation.token,
            limit,
            self.reservation_ttl_seconds,
            self._key_ttl(period, now),
        )
        if not admitted:
            logger.info(
                "quota_exceeded",
                organization_id=str(reservation.organization_id),
                plan=reservation.plan.value,
                limit=limit,
                period=period.key,
            )
            raise QuotaExceededError(plan=reservation.plan.value, limit=limit, reset_at=period.reset_at)

    def commit(self, reservation: QuotaReservation, now: datetime) -> QuotaStatus:
        """
        Charge a reserved generation. Call only after results are durable.

        Raises:
            QuotaExceededError: If the reservation expired before the commit
                and the limit has since been reached. Nothing is charged.
        """
        period = reservation.period
        key = used_key(reservation.organization_id, period.key)
        ttl = self._key_ttl(period, now)

        if reservation.token is None:
            used = self.cache.incr(key, 1, ttl_seconds=ttl)
        else:
            limit = self.limit_for(reservation.plan)
            used = self.cache.commit_slot(
                key,
                pending_key(reservation.organization_id, period.key),
                reservation.token,
                limit,
                ttl,
            )
            if used is None:
                logger.error(
                    "quota_commit_refused",
                    organization_id=str(reservation.organization_id),
                    plan=reservation.plan.value,
                    limit=limit,
                    period=period.key,
                )
                raise QuotaExceededError(plan=reservation.plan.value, limit=limit, reset_at=period.reset_at)

        logger.debug(
            "quota_committed",
            organization_id=str(reservation.organization_id),
            period=period.key,
            used=used,
        )
        return self._status(reservation.plan, period, used, reservation.seat_limit)

    def release(self, reservation: QuotaReservation) -> None:
        """Drop a reservation without charging it."""
        if reservation.token is None:
            return
        self.cache.release_slot(
            pending_key(reservation.organization_id, reservation.period.key),
            reservation.token,
        )
        logger.debug(
            "quota_released",
            organization_id=str(reservation.organization_id),
            period=reservation.period.key,
        )
