"""Per-tool circuit breakers shared by every task in the process."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from taskcrew.orchestrator.models import BreakerState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BreakerSnapshot:
    """Point-in-time view of one breaker."""

    tool_id: str
    state: BreakerState
    consecutive_failures: int
    trial_in_flight: bool
    last_transition_at: float
    open_for_seconds: float


class CircuitBreaker:
    """Closed -> open after `failure_threshold` consecutive failures.

    Once `cooldown_seconds` have passed, the next `acquire()` moves the breaker
    to half_open and admits exactly one trial call. The trial's outcome closes
    the breaker or opens it again for another cool-down.
    """

    def __init__(
        self,
        tool_id: str,
        *,
        failure_threshold: int,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.tool_id = tool_id
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._trial_in_flight = False
        self._opened_at = 0.0
        self._last_transition_at = clock()

    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    def is_selectable(self) -> bool:
        """False while open, and while half_open with the trial already taken."""

        with self._lock:
            state = self._current_state()
            if state == BreakerState.OPEN:
                return False
            return not (state == BreakerState.HALF_OPEN and self._trial_in_flight)

    def acquire(self) -> bool:
        """Reserve permission for one call; False means the call must not be made."""

        with self._lock:
            state = self._current_state()
            if state == BreakerState.CLOSED:
                return True
            if state == BreakerState.OPEN:
                return False
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def release(self) -> None:
        """Return a permit whose call never started; counts as neither outcome."""

        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("Circuit for tool %s closed after successful trial", self.tool_id)
                self._transition(BreakerState.CLOSED)
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            if state == BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._open()
                logger.warning("Circuit for tool %s re-opened after failed trial", self.tool_id)
                return
            if state == BreakerState.OPEN:
                return
            self._failures += 1
            if self._failures >= self._threshold:
                self._open()
                logger.warning(
                    "Circuit for tool %s opened after %d consecutive failures",
                    self.tool_id,
                    self._failures,
                )

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            state = self._current_state()
            open_for = 0.0
            if state == BreakerState.OPEN:
                open_for = max(0.0, self._opened_at + self._cooldown - self._clock())
            return BreakerSnapshot(
                tool_id=self.tool_id,
                state=state,
                consecutive_failures=self._failures,
                trial_in_flight=self._trial_in_flight,
                last_transition_at=self._last_transition_at,
                open_for_seconds=open_for,
            )

    def _current_state(self) -> BreakerState:
        # Caller holds the lock.
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self._cooldown
        ):
            self._transition(BreakerState.HALF_OPEN)
            self._trial_in_flight = False
        return self._state

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._failures = self._threshold
        self._transition(BreakerState.OPEN)

    def _transition(self, state: BreakerState) -> None:
        self._state = state
        self._last_transition_at = self._clock()


class CircuitBreakerRegistry:
    """Single shared map of tool id -> breaker."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, tool_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(tool_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    tool_id,
                    failure_threshold=self._threshold,
                    cooldown_seconds=self._cooldown,
                    clock=self._clock,
                )
                self._breakers[tool_id] = breaker
            return breaker

    def snapshot_all(self) -> list[BreakerSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.snapshot() for breaker in sorted(breakers, key=lambda item: item.tool_id)]
