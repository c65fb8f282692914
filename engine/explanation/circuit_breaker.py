"""
Circuit breaker for the explanation provider.

States:
    - CLOSED: Normal operation, calls pass through and outcomes are sampled
    - OPEN: Provider is failing, calls fast-fail to the fallback
    - HALF_OPEN: Cooldown elapsed, a limited number of trial calls pass

The breaker opens when the failure rate over a rolling time window reaches
the threshold with at least ``minimum_calls`` samples. Each failed trial
doubles the cooldown up to ``max_cooldown_seconds``.

The internal lock only guards bookkeeping; the provider call itself is made
by the caller outside of it.
"""
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any, Optional

import structlog

from backend.core.config import settings

logger = structlog.get_logger().bind(component="circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Rolling-window circuit breaker with exponential cooldown."""

    def __init__(
        self,
        name: str = "explanation_provider",
        window_seconds: Optional[float] = None,
        failure_rate_threshold: Optional[float] = None,
        minimum_calls: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        max_cooldown_seconds: Optional[float] = None,
        half_open_max_calls: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Label used in logs.
            window_seconds: Length of the rolling sample window.
            failure_rate_threshold: Failure ratio (0-1) that opens the circuit.
            minimum_calls: Samples required in the window before it can open.
            cooldown_seconds: Initial time spent OPEN before a trial call.
            max_cooldown_seconds: Upper bound for the doubled cooldown.
            half_open_max_calls: Concurrent trial calls allowed in HALF_OPEN.
            clock: Monotonic time source, injectable for tests.
        """
        self.name = name
        self.window_seconds = window_seconds if window_seconds is not None else settings.breaker_window_seconds
        self.failure_rate_threshold = (
            failure_rate_threshold
            if failure_rate_threshold is not None
            else settings.breaker_failure_rate_threshold
        )
        self.minimum_calls = minimum_calls if minimum_calls is not None else settings.breaker_minimum_calls
        self.base_cooldown = cooldown_seconds if cooldown_seconds is not None else settings.breaker_cooldown_seconds
        self.max_cooldown = (
            max_cooldown_seconds if max_cooldown_seconds is not None else settings.breaker_max_cooldown_seconds
        )
        self.half_open_max_calls = (
            half_open_max_calls if half_open_max_calls is not None else settings.breaker_half_open_max_calls
        )
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._samples: deque[tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._cooldown = self.base_cooldown
        self._trials_in_flight = 0

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def _refresh(self, now: float) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self._cooldown
        ):
            self._state = CircuitState.HALF_OPEN
            self._trials_in_flight = 0
            logger.info("circuit_half_open", breaker=self.name, cooldown=self._cooldown)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trials_in_flight = 0
        self._samples.clear()

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the cooldown has elapsed."""
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def allow_request(self) -> bool:
        """
        Check whether a call may proceed.

        In HALF_OPEN this claims one of the trial slots; the caller must then
        report the outcome with ``record_success`` or ``record_failure``.
        """
        with self._lock:
            now = self._clock()
            self._refresh(now)
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and self._trials_in_flight < self.half_open_max_calls:
                self._trials_in_flight += 1
                return True
            return False

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._cooldown = self.base_cooldown
                self._opened_at = None
                self._trials_in_flight = 0
                self._samples.clear()
                logger.info("circuit_closed", breaker=self.name)
                return
            if self._state == CircuitState.CLOSED:
                self._samples.append((now, True))
                self._prune(now)

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._cooldown = min(self._cooldown * 2, self.max_cooldown)
                self._open(now)
                logger.warning("circuit_reopened", breaker=self.name, cooldown=self._cooldown)
                return
            if self._state != CircuitState.CLOSED:
                return

            self._samples.append((now, False))
            self._prune(now)
            calls = len(self._samples)
            failures = sum(1 for _, ok in self._samples if not ok)
            if calls >= self.minimum_calls and failures / calls >= self.failure_rate_threshold:
                self._open(now)
                logger.warning(
                    "circuit_opened",
                    breaker=self.name,
                    failures=failures,
                    calls=calls,
                    cooldown=self._cooldown,
                )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._prune(now)
            return {
                "name": self.name,
                "state": self._state.value,
                "window_calls": len(self._samples),
                "window_failures": sum(1 for _, ok in self._samples if not ok),
                "cooldown_seconds": self._cooldown,
            }

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._samples.clear()
            self._opened_at = None
            self._cooldown = self.base_cooldown
            self._trials_in_flight = 0
