from __future__ import annotations

import allure
import pytest

from taskcrew.config import RecoverySettings
from taskcrew.orchestrator.errors import ExecutionError
from taskcrew.orchestrator.failure_classifier import (
    CATEGORY_POLICY,
    CONTEXT_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    PATTERN_CONFIDENCE,
    ExecutionContext,
    FailureClassifier,
    looks_transient,
)
from taskcrew.orchestrator.models import (
    EscalationPriority,
    FailureCategory,
    InterventionType,
    RecoveryAction,
)
from taskcrew.orchestrator.skills import Skill

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Failure Classification"),
]

_CLASSIFIER = FailureClassifier(RecoverySettings())


@pytest.mark.parametrize(
    ("error", "category", "rule"),
    [
        (
            ExecutionError(code="provider_error", detail="Permission denied: /etc/passwd"),
            FailureCategory.BOUNDARY_VIOLATION,
            "boundary_violation",
        ),
        (
            ExecutionError(code="boundary_violation", detail="path rejected"),
            FailureCategory.BOUNDARY_VIOLATION,
            "boundary_violation",
        ),
        (
            ExecutionError(code="provider_error", detail="Requirements contradict each other"),
            FailureCategory.LOGICAL_IMPOSSIBILITY,
            "logical_impossibility",
        ),
        (
            ExecutionError(code="budget_exceeded", detail="limit reached"),
            FailureCategory.RESOURCE_EXHAUSTION,
            "budget_exceeded",
        ),
        (
            ExecutionError(code="exit_1", detail="Monthly quota used up"),
            FailureCategory.RESOURCE_EXHAUSTION,
            "billing_or_quota",
        ),
        (
            ExecutionError(code="exit_1", detail="Prompt is too long for this model"),
            FailureCategory.CONTEXT_LIMITATION,
            "context_limit_pattern",
        ),
        (
            ExecutionError(code="no_tool_candidates", detail="nothing serves code_execution"),
            FailureCategory.CAPABILITY_GAP,
            "capability_gap",
        ),
        (
            ExecutionError(code="timeout", detail="slow", timed_out=True, transient=True),
            FailureCategory.TEMPORARY_OUTAGE,
            "timeout",
        ),
        (
            ExecutionError(code="exit_75", detail="retry me", transient=True),
            FailureCategory.TEMPORARY_OUTAGE,
            "transient_flag",
        ),
        (
            ExecutionError(code="exit_1", detail="HTTP 429 Too Many Requests"),
            FailureCategory.TEMPORARY_OUTAGE,
            "transient_pattern",
        ),
        (
            ExecutionError(code="exit_1", detail="Conflicting update on shared draft"),
            FailureCategory.COORDINATION_FAILURE,
            "coordination_pattern",
        ),
        (
            ExecutionError(code="exit_1", detail="The request is ambiguous"),
            FailureCategory.AMBIGUITY,
            "ambiguity_pattern",
        ),
        (
            ExecutionError(code="exit_1", detail="segmentation fault"),
            FailureCategory.TOOL_FAILURE,
            "fallback_tool_failure",
        ),
    ],
)
def test_classify_matches_first_rule_in_order(
    error: ExecutionError,
    category: FailureCategory,
    rule: str,
) -> None:
    analysis = _CLASSIFIER.classify("task-1", error)

    assert analysis.category == category
    assert analysis.matched_rule == rule
    policy = CATEGORY_POLICY[category]
    assert analysis.recommended_action == policy.action
    assert analysis.escalation_priority == policy.priority
    assert analysis.intervention == policy.intervention


def test_boundary_outranks_transient_and_ambiguity() -> None:
    error = ExecutionError(
        code="exit_1",
        detail="Access denied, unclear scope, service unavailable",
        transient=True,
    )

    analysis = _CLASSIFIER.classify("task-1", error)

    assert analysis.category == FailureCategory.BOUNDARY_VIOLATION
    assert analysis.escalation_priority == EscalationPriority.CRITICAL
    assert analysis.recommended_action == RecoveryAction.ABORT


def test_missing_skills_yield_capability_gap_with_evidence() -> None:
    context = ExecutionContext(
        required_skills={Skill.CODING: 0.9},
        held_skills={Skill.CODING: 0.6, Skill.WRITING: 0.9},
    )

    analysis = _CLASSIFIER.classify("task-1", ExecutionError(code="exit_1"), context)

    assert analysis.category == FailureCategory.CAPABILITY_GAP
    assert analysis.confidence == CONTEXT_CONFIDENCE
    assert analysis.evidence["missing_skills"] == {"coding": 0.3}
    assert analysis.intervention == InterventionType.SKILL_GAP_RESOLUTION


def test_zero_candidate_tools_is_a_capability_gap() -> None:
    analysis = _CLASSIFIER.classify(
        "task-1",
        ExecutionError(code="exit_1"),
        ExecutionContext(candidate_tools=0),
    )

    assert analysis.category == FailureCategory.CAPABILITY_GAP


def test_token_usage_at_limit_is_context_limitation() -> None:
    analysis = _CLASSIFIER.classify(
        "task-1",
        ExecutionError(code="exit_1"),
        ExecutionContext(tokens_used=8_000, token_limit=8_000),
    )

    assert analysis.category == FailureCategory.CONTEXT_LIMITATION
    assert analysis.matched_rule == "token_limit_reached"


def test_message_gap_over_threshold_is_coordination_failure() -> None:
    below = _CLASSIFIER.classify(
        "task-1",
        ExecutionError(code="exit_1"),
        ExecutionContext(message_gap_seconds=299.0),
    )
    above = _CLASSIFIER.classify(
        "task-1",
        ExecutionError(code="exit_1"),
        ExecutionContext(message_gap_seconds=300.0),
    )

    assert below.category == FailureCategory.TOOL_FAILURE
    assert above.category == FailureCategory.COORDINATION_FAILURE
    assert above.recommended_action == RecoveryAction.DECOMPOSE


def test_provider_ambiguity_signal_uses_threshold() -> None:
    low = ExecutionError(code="exit_1", signals={"ambiguity": 0.59})
    high = ExecutionError(code="exit_1", signals={"ambiguity": 0.6})

    assert _CLASSIFIER.classify("task-1", low).category == FailureCategory.TOOL_FAILURE
    analysis = _CLASSIFIER.classify("task-1", high)
    assert analysis.category == FailureCategory.AMBIGUITY
    assert analysis.recommended_action == RecoveryAction.REQUEST_CLARIFICATION


def test_provider_confidence_is_blended_but_never_picks_category() -> None:
    error = ExecutionError(code="exit_1", detail="Monthly quota used up", signals={"confidence": 0.3})

    analysis = _CLASSIFIER.classify("task-1", error)

    assert analysis.category == FailureCategory.RESOURCE_EXHAUSTION
    assert analysis.confidence == pytest.approx((PATTERN_CONFIDENCE + 0.3) / 2)


def test_fallback_has_low_confidence_and_records_context() -> None:
    analysis = _CLASSIFIER.classify(
        "task-9",
        ExecutionError(code="exit_2", detail="bad output\nmore lines", tool_id="draft_writer"),
        ExecutionContext(tools_used=("draft_writer",)),
    )

    assert analysis.confidence == FALLBACK_CONFIDENCE
    assert analysis.root_cause == "exit_2: bad output"
    assert analysis.evidence["task_id"] == "task-9"
    assert analysis.evidence["tools_used"] == ["draft_writer"]
    assert analysis.evidence["tool_id"] == "draft_writer"


def test_looks_transient_detects_rate_limits_and_outages() -> None:
    assert looks_transient("Rate limit reached, please retry")
    assert looks_transient("503 Service Unavailable")
    assert not looks_transient("invalid argument")
