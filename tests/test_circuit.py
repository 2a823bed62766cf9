from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import allure
import pytest

from taskcrew.orchestrator.models import BreakerState
from taskcrew.orchestrator.tools.circuit import CircuitBreaker, CircuitBreakerRegistry

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("Circuit Breakers"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _breaker(clock: _Clock, threshold: int = 3) -> CircuitBreaker:
    return CircuitBreaker(
        "search",
        failure_threshold=threshold,
        cooldown_seconds=30.0,
        clock=clock,
    )


def test_breaker_opens_after_consecutive_failures() -> None:
    clock = _Clock()
    breaker = _breaker(clock)

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state() == BreakerState.CLOSED
    breaker.record_failure()

    assert breaker.state() == BreakerState.OPEN
    assert breaker.acquire() is False
    assert breaker.is_selectable() is False
    assert breaker.snapshot().open_for_seconds == pytest.approx(30.0)


def test_success_resets_failure_streak() -> None:
    clock = _Clock()
    breaker = _breaker(clock)

    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state() == BreakerState.CLOSED
    assert breaker.snapshot().consecutive_failures == 1


def test_half_open_admits_a_single_trial() -> None:
    clock = _Clock()
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()

    clock.now += 30.0

    assert breaker.state() == BreakerState.HALF_OPEN
    assert breaker.is_selectable() is True
    assert breaker.acquire() is True
    assert breaker.acquire() is False
    assert breaker.is_selectable() is False


def test_successful_trial_closes_breaker() -> None:
    clock = _Clock()
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()
    clock.now += 31.0
    assert breaker.acquire() is True

    breaker.record_success()

    snapshot = breaker.snapshot()
    assert snapshot.state == BreakerState.CLOSED
    assert snapshot.consecutive_failures == 0
    assert snapshot.trial_in_flight is False


def test_failed_trial_reopens_for_a_new_cooldown() -> None:
    clock = _Clock()
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()
    clock.now += 31.0
    assert breaker.acquire() is True

    breaker.record_failure()

    assert breaker.state() == BreakerState.OPEN
    clock.now += 29.0
    assert breaker.state() == BreakerState.OPEN
    clock.now += 1.0
    assert breaker.state() == BreakerState.HALF_OPEN


def test_breaker_rejects_non_positive_threshold() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreaker("search", failure_threshold=0, cooldown_seconds=1.0)


def test_registry_shares_one_breaker_per_tool() -> None:
    registry = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=5.0)

    registry.get("search").record_failure()

    assert registry.get("search").state() == BreakerState.OPEN
    assert registry.get("reader").state() == BreakerState.CLOSED
    assert [item.tool_id for item in registry.snapshot_all()] == ["reader", "search"]


def test_concurrent_failures_open_exactly_at_threshold() -> None:
    clock = _Clock()
    breaker = _breaker(clock, threshold=40)
    gate = threading.Barrier(39)

    def fail() -> None:
        gate.wait(5)
        breaker.record_failure()

    with ThreadPoolExecutor(max_workers=39) as pool:
        for future in [pool.submit(fail) for _ in range(39)]:
            future.result()

    assert breaker.state() == BreakerState.CLOSED
    assert breaker.snapshot().consecutive_failures == 39
    breaker.record_failure()
    assert breaker.state() == BreakerState.OPEN


def test_half_open_admits_one_trial_under_contention() -> None:
    clock = _Clock()
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()
    clock.now += 31.0
    gate = threading.Barrier(20)

    def try_acquire() -> bool:
        gate.wait(5)
        return breaker.acquire()

    with ThreadPoolExecutor(max_workers=20) as pool:
        granted = [future.result() for future in [pool.submit(try_acquire) for _ in range(20)]]

    assert granted.count(True) == 1


def test_released_trial_permit_can_be_taken_again() -> None:
    clock = _Clock()
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()
    clock.now += 31.0

    assert breaker.acquire() is True
    assert breaker.acquire() is False
    breaker.release()

    assert breaker.state() == BreakerState.HALF_OPEN
    assert breaker.acquire() is True
