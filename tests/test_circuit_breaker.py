"""
Tests for the explanation provider circuit breaker.
"""
import pytest

from engine.explanation.circuit_breaker import CircuitBreaker, CircuitState


@pytest.fixture
def breaker(fake_clock) -> CircuitBreaker:
    return CircuitBreaker(
        name="test",
        window_seconds=60,
        failure_rate_threshold=0.5,
        minimum_calls=5,
        cooldown_seconds=30,
        max_cooldown_seconds=120,
        half_open_max_calls=1,
        clock=fake_clock,
    )


def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        breaker.record_failure()


class TestOpening:
    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_needs_minimum_calls(self, breaker):
        _fail(breaker, 4)
        assert breaker.state == CircuitState.CLOSED

    def test_opens_at_failure_rate(self, breaker):
        _fail(breaker, 5)

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_mostly_successful_window_stays_closed(self, breaker):
        for _ in range(4):
            breaker.record_success()
        _fail(breaker, 3)

        # 3 of 7 failed
        assert breaker.state == CircuitState.CLOSED

    def test_old_samples_leave_the_window(self, breaker, fake_clock):
        _fail(breaker, 4)
        fake_clock.advance(61)
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot()["window_failures"] == 1


class TestRecovery:
    def test_half_open_after_cooldown(self, breaker, fake_clock):
        _fail(breaker, 5)

        fake_clock.advance(29)
        assert breaker.state == CircuitState.OPEN

        fake_clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_allows_one_trial(self, breaker, fake_clock):
        _fail(breaker, 5)
        fake_clock.advance(30)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_successful_trial_closes(self, breaker, fake_clock):
        _fail(breaker, 5)
        fake_clock.advance(30)
        breaker.allow_request()

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True
        assert breaker.snapshot()["cooldown_seconds"] == 30

    def test_failed_trial_doubles_cooldown(self, breaker, fake_clock):
        _fail(breaker, 5)
        fake_clock.advance(30)
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.snapshot()["cooldown_seconds"] == 60
        fake_clock.advance(59)
        assert breaker.state == CircuitState.OPEN
        fake_clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_cooldown_is_capped(self, breaker, fake_clock):
        _fail(breaker, 5)
        for cooldown in (30, 60, 120):
            fake_clock.advance(cooldown)
            breaker.allow_request()
            breaker.record_failure()

        assert breaker.snapshot()["cooldown_seconds"] == 120

    def test_reset(self, breaker):
        _fail(breaker, 5)
        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot()["window_calls"] == 0


class TestOutageScenario:
    """A provider outage is contained and recovery is detected."""

    def test_outage_and_recovery(self, breaker, fake_clock):
        calls = 0
        for _ in range(20):
            if breaker.allow_request():
                calls += 1
                breaker.record_failure()
            fake_clock.advance(1)

        # Only the calls needed to trip the breaker reached the provider
        assert calls == 5
        assert breaker.snapshot()["state"] == "open"

        fake_clock.advance(30)
        assert breaker.allow_request() is True
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
