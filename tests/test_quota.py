"""
Tests for generation quota enforcement.
Covers plan limits, the reservation protocol, concurrency and period rollover.
"""
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from backend.core.exceptions import QuotaExceededError
from backend.models import PlanTier
from backend.services.cache import InMemoryCacheStore
from engine.matching.quota import QuotaManager, pending_key, used_key


@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def quota(cache_store) -> QuotaManager:
    return QuotaManager(cache_store, free_limit=3, reservation_ttl_seconds=300)


class TestPlanLimits:
    def test_free_plan_is_limited(self, quota):
        assert quota.limit_for(PlanTier.FREE) == 3

    @pytest.mark.parametrize("plan", [PlanTier.PRO, PlanTier.TEAM])
    def test_paid_plans_are_unlimited(self, quota, plan):
        assert quota.limit_for(plan) is None

    def test_status_for_fresh_organization(self, quota, org_id, fixed_now):
        status = quota.status(org_id, PlanTier.FREE, fixed_now)

        assert status.used == 0
        assert status.limit == 3
        assert status.remaining == 3
        # 2026-04-01 00:00 KST
        assert status.reset_at == datetime(2026, 3, 31, 15, 0, tzinfo=timezone.utc)


class TestReservation:
    def test_commit_charges_one_generation(self, quota, org_id, fixed_now):
        reservation = quota.reserve(org_id, PlanTier.FREE, fixed_now)

        status = quota.commit(reservation, fixed_now)

        assert status.used == 1
        assert status.remaining == 2
        assert quota.status(org_id, PlanTier.FREE, fixed_now).used == 1

    def test_release_does_not_charge(self, quota, org_id, fixed_now):
        reservation = quota.reserve(org_id, PlanTier.FREE, fixed_now)

        quota.release(reservation)

        assert quota.status(org_id, PlanTier.FREE, fixed_now).used == 0

    def test_fourth_generation_is_rejected(self, quota, org_id, fixed_now):
        for _ in range(3):
            quota.commit(quota.reserve(org_id, PlanTier.FREE, fixed_now), fixed_now)

        with pytest.raises(QuotaExceededError) as exc_info:
            quota.reserve(org_id, PlanTier.FREE, fixed_now)

        assert exc_info.value.status_code == 429
        assert exc_info.value.detail["remaining"] == 0
        assert exc_info.value.detail["limit"] == 3
        assert quota.status(org_id, PlanTier.FREE, fixed_now).used == 3

    def test_pending_reservations_count_against_limit(self, quota, org_id, fixed_now):
        held = [quota.reserve(org_id, PlanTier.FREE, fixed_now) for _ in range(3)]

        with pytest.raises(QuotaExceededError):
            quota.reserve(org_id, PlanTier.FREE, fixed_now)

        quota.release(held[0])
        quota.reserve(org_id, PlanTier.FREE, fixed_now)

    def test_unlimited_plan_still_tracks_usage(self, quota, org_id, fixed_now):
        for _ in range(5):
            reservation = quota.reserve(org_id, PlanTier.PRO, fixed_now)
            assert reservation.token is None
            status = quota.commit(reservation, fixed_now)

        assert status.used == 5
        assert status.limit is None
        assert status.remaining is None

    def test_seat_limit_is_reported(self, quota, org_id, fixed_now):
        reservation = quota.reserve(org_id, PlanTier.TEAM, fixed_now, seat_limit=5)
        status = quota.commit(reservation, fixed_now)
        assert status.seat_limit == 5

    def test_organizations_are_isolated(self, quota, fixed_now):
        first, second = uuid.uuid4(), uuid.uuid4()
        for _ in range(3):
            quota.commit(quota.reserve(first, PlanTier.FREE, fixed_now), fixed_now)

        quota.reserve(second, PlanTier.FREE, fixed_now)

    def test_uses_period_keys(self, quota, cache_store, org_id, fixed_now):
        quota.reserve(org_id, PlanTier.FREE, fixed_now)
        quota.commit(quota.reserve(org_id, PlanTier.FREE, fixed_now), fixed_now)

        assert cache_store.get_int(used_key(org_id, "2026-03")) == 1
        assert used_key(org_id, "2026-03") == f"quota:used:{org_id}:2026-03"
        assert pending_key(org_id, "2026-03") == f"quota:pending:{org_id}:2026-03"


class TestReservationExpiry:
    def test_abandoned_reservation_expires(self, fake_clock, org_id, fixed_now):
        cache = InMemoryCacheStore(clock=fake_clock)
        quota = QuotaManager(cache, free_limit=1, reservation_ttl_seconds=60)

        quota.reserve(org_id, PlanTier.FREE, fixed_now)
        with pytest.raises(QuotaExceededError):
            quota.reserve(org_id, PlanTier.FREE, fixed_now)

        fake_clock.advance(61)

        quota.reserve(org_id, PlanTier.FREE, fixed_now)

    def test_expired_reservation_cannot_overshoot_limit(self, fake_clock, org_id, fixed_now):
        cache = InMemoryCacheStore(clock=fake_clock)
        quota = QuotaManager(cache, free_limit=3, reservation_ttl_seconds=300)
        for _ in range(2):
            quota.commit(quota.reserve(org_id, PlanTier.FREE, fixed_now), fixed_now)

        slow = quota.reserve(org_id, PlanTier.FREE, fixed_now)
        fake_clock.advance(301)
        quota.commit(quota.reserve(org_id, PlanTier.FREE, fixed_now), fixed_now)

        with pytest.raises(QuotaExceededError):
            quota.commit(slow, fixed_now)

        assert quota.status(org_id, PlanTier.FREE, fixed_now).used == 3

    def test_expired_reservation_commits_when_room_remains(self, fake_clock, org_id, fixed_now):
        cache = InMemoryCacheStore(clock=fake_clock)
        quota = QuotaManager(cache, free_limit=3, reservation_ttl_seconds=300)

        slow = quota.reserve(org_id, PlanTier.FREE, fixed_now)
        fake_clock.advance(301)

        assert quota.commit(slow, fixed_now).used == 1

    def test_renew_extends_live_reservation(self, fake_clock, org_id, fixed_now):
        cache = InMemoryCacheStore(clock=fake_clock)
        quota = QuotaManager(cache, free_limit=1, reservation_ttl_seconds=300)

        held = quota.reserve(org_id, PlanTier.FREE, fixed_now)
        fake_clock.advance(200)
        quota.renew(held, fixed_now)
        fake_clock.advance(200)

        with pytest.raises(QuotaExceededError):
            quota.reserve(org_id, PlanTier.FREE, fixed_now)
        assert quota.commit(held, fixed_now).used == 1

    def test_renew_refuses_expired_reservation_without_room(self, fake_clock, org_id, fixed_now):
        cache = InMemoryCacheStore(clock=fake_clock)
        quota = QuotaManager(cache, free_limit=1, reservation_ttl_seconds=300)

        slow = quota.reserve(org_id, PlanTier.FREE, fixed_now)
        fake_clock.advance(301)
        quota.commit(quota.reserve(org_id, PlanTier.FREE, fixed_now), fixed_now)

        with pytest.raises(QuotaExceededError):
            quota.renew(slow, fixed_now)
        assert quota.status(org_id, PlanTier.FREE, fixed_now).used == 1

    def test_renew_is_noop_for_unlimited_plan(self, quota, org_id, fixed_now):
        reservation = quota.reserve(org_id, PlanTier.PRO, fixed_now)

        quota.renew(reservation, fixed_now)

        assert quota.commit(reservation, fixed_now).used == 1


class TestConcurrency:
    def test_concurrent_requests_never_overshoot(self, quota, org_id, fixed_now):
        for _ in range(2):
            quota.commit(quota.reserve(org_id, PlanTier.FREE, fixed_now), fixed_now)

        barrier = threading.Barrier(10)
        admitted: list[bool] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                reservation = quota.reserve(org_id, PlanTier.FREE, fixed_now)
            except QuotaExceededError:
                outcome = False
            else:
                quota.commit(reservation, fixed_now)
                outcome = True
            with lock:
                admitted.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert admitted.count(True) == 1
        assert quota.status(org_id, PlanTier.FREE, fixed_now).used == 3


class TestPeriodRollover:
    def test_usage_resets_at_business_month_boundary(self, quota, org_id):
        # 2026-03-31 23:30 KST
        march = datetime(2026, 3, 31, 14, 30, tzinfo=timezone.utc)
        for _ in range(3):
            quota.commit(quota.reserve(org_id, PlanTier.FREE, march), march)

        with pytest.raises(QuotaExceededError):
            quota.reserve(org_id, PlanTier.FREE, march)

        april = march + timedelta(hours=1)
        status = quota.commit(quota.reserve(org_id, PlanTier.FREE, april), april)

        assert status.used == 1
        assert status.reset_at == datetime(2026, 4, 30, 15, 0, tzinfo=timezone.utc)
