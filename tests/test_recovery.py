from __future__ import annotations

import random

import allure
import pytest

from taskcrew.config import RecoverySettings
from taskcrew.orchestrator.failure_classifier import CATEGORY_POLICY
from taskcrew.orchestrator.models import EscalationPriority, FailureAnalysis, FailureCategory
from taskcrew.orchestrator.recovery import RecoveryEngine, RecoveryVerdict

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Recovery"),
]


class _LowJitter(random.Random):
    def uniform(self, a: float, b: float) -> float:
        return a


def _analysis(category: FailureCategory) -> FailureAnalysis:
    policy = CATEGORY_POLICY[category]
    return FailureAnalysis(
        category=category,
        root_cause=f"{category.value} seen",
        confidence=0.9,
        recommended_action=policy.action,
        escalation_priority=policy.priority,
        intervention=policy.intervention,
        matched_rule="test",
    )


def _engine(sleeps: list[float] | None = None) -> RecoveryEngine:
    recorded = sleeps if sleeps is not None else []
    return RecoveryEngine(
        RecoverySettings(base_delay_seconds=1.0, multiplier=2.0, max_attempts=3, jitter_ratio=0.2),
        random_source=_LowJitter(),
        sleep=recorded.append,
    )


def test_transient_failure_retries_with_exponential_backoff() -> None:
    sleeps: list[float] = []
    engine = _engine(sleeps)
    analysis = _analysis(FailureCategory.TEMPORARY_OUTAGE)

    first = engine.decide(analysis, attempt=1)
    second = engine.decide(analysis, attempt=2)
    engine.wait(second)

    assert first.verdict == RecoveryVerdict.RETRY
    assert first.delay_seconds == pytest.approx(0.8)
    assert second.delay_seconds == pytest.approx(1.6)
    assert sleeps == [pytest.approx(1.6)]


def test_backoff_jitter_stays_within_bounds() -> None:
    engine = RecoveryEngine(RecoverySettings(jitter_ratio=0.2), random_source=random.Random(7))

    delays = [engine.backoff_delay(3) for _ in range(50)]

    assert all(3.2 <= delay <= 4.8 for delay in delays)


def test_exhausted_attempts_escalate_with_at_least_medium_priority() -> None:
    decision = _engine().decide(_analysis(FailureCategory.TEMPORARY_OUTAGE), attempt=3)

    assert decision.verdict == RecoveryVerdict.ESCALATE
    assert decision.priority == EscalationPriority.MEDIUM
    assert "exhausted after 3 attempts" in decision.reason


@pytest.mark.parametrize(
    "category",
    [FailureCategory.BOUNDARY_VIOLATION, FailureCategory.LOGICAL_IMPOSSIBILITY],
)
def test_non_recoverable_categories_abort_immediately(category: FailureCategory) -> None:
    decision = _engine().decide(_analysis(category), attempt=1, has_fallback_tool=True)

    assert decision.verdict == RecoveryVerdict.ABORT
    assert decision.priority == EscalationPriority.CRITICAL
    assert decision.reason == f"{category.value} seen"


def test_tool_failure_reselects_only_when_fallback_exists() -> None:
    engine = _engine()
    analysis = _analysis(FailureCategory.TOOL_FAILURE)

    assert engine.decide(analysis, attempt=1, has_fallback_tool=True).verdict == (
        RecoveryVerdict.RESELECT_TOOL
    )
    fallback_missing = engine.decide(analysis, attempt=1)
    assert fallback_missing.verdict == RecoveryVerdict.ESCALATE
    assert fallback_missing.priority == EscalationPriority.HIGH


def test_capability_gap_reassigns_and_coordination_decomposes() -> None:
    engine = _engine()

    reassign = engine.decide(
        _analysis(FailureCategory.CAPABILITY_GAP),
        attempt=1,
        has_alternative_agent=True,
    )
    decompose = engine.decide(
        _analysis(FailureCategory.COORDINATION_FAILURE),
        attempt=1,
        can_decompose=True,
    )

    assert reassign.verdict == RecoveryVerdict.REASSIGN
    assert decompose.verdict == RecoveryVerdict.DECOMPOSE


def test_human_only_categories_escalate_with_intervention() -> None:
    decision = _engine().decide(_analysis(FailureCategory.AMBIGUITY), attempt=1)

    assert decision.verdict == RecoveryVerdict.ESCALATE
    assert decision.reason == "request_clarification"
    assert decision.intervention == CATEGORY_POLICY[FailureCategory.AMBIGUITY].intervention
