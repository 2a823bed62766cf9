"""Deterministic failure classification into the nine-category taxonomy.

Rules are evaluated in a fixed order and the first match wins, so every
failed execution gets exactly one category. The category alone fixes the
recommended action, escalation priority, and intervention type. Model-backed
providers may contribute a bounded confidence/ambiguity score, but never a
category.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import NamedTuple

from taskcrew.config import RecoverySettings
from taskcrew.orchestrator.errors import ExecutionError
from taskcrew.orchestrator.models import (
    EscalationPriority,
    FailureAnalysis,
    FailureCategory,
    InterventionType,
    RecoveryAction,
)
from taskcrew.orchestrator.skills import Skill

FAILURE_CLASSIFIER_VERSION = 1

PATTERN_CONFIDENCE = 0.9
CONTEXT_CONFIDENCE = 0.75
FALLBACK_CONFIDENCE = 0.5

_BOUNDARY_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "access denied",
    "forbidden",
    "unauthorized",
    "policy violation",
    "outside the workspace",
    "outside workspace",
    "not permitted",
    "sandbox",
)
_IMPOSSIBILITY_PATTERNS: tuple[str, ...] = (
    "contradict",
    "impossible",
    "unsatisfiable",
    "mutually exclusive",
    "cannot both",
    "paradox",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient funds",
    "insufficient credits",
    "billing",
    "payment",
    "usage limit",
    "budget",
)
_CONTEXT_PATTERNS: tuple[str, ...] = (
    "context length",
    "context window",
    "maximum context",
    "too many tokens",
    "token limit",
    "input too long",
    "prompt is too long",
)
_CAPABILITY_CODES: tuple[str, ...] = (
    "no_eligible_agent",
    "no_tool_candidates",
    "unsupported_capability",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "503",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
)
_COORDINATION_PATTERNS: tuple[str, ...] = (
    "conflicting update",
    "concurrent modification",
    "changed concurrently",
    "waiting on dependency",
    "handoff",
    "stale state",
)
_AMBIGUITY_PATTERNS: tuple[str, ...] = (
    "ambiguous",
    "unclear",
    "underspecified",
    "clarify",
    "clarification",
    "multiple interpretations",
)


class CategoryPolicy(NamedTuple):
    action: RecoveryAction
    priority: EscalationPriority
    intervention: InterventionType
    auto_recoverable: bool


CATEGORY_POLICY: dict[FailureCategory, CategoryPolicy] = {
    FailureCategory.AMBIGUITY: CategoryPolicy(
        RecoveryAction.REQUEST_CLARIFICATION,
        EscalationPriority.HIGH,
        InterventionType.CLARIFICATION,
        False,
    ),
    FailureCategory.CAPABILITY_GAP: CategoryPolicy(
        RecoveryAction.REASSIGN,
        EscalationPriority.MEDIUM,
        InterventionType.SKILL_GAP_RESOLUTION,
        True,
    ),
    FailureCategory.COORDINATION_FAILURE: CategoryPolicy(
        RecoveryAction.DECOMPOSE,
        EscalationPriority.LOW,
        InterventionType.POLICY_DECISION,
        True,
    ),
    FailureCategory.TOOL_FAILURE: CategoryPolicy(
        RecoveryAction.REPLACE_TOOL_INTEGRATION,
        EscalationPriority.HIGH,
        InterventionType.TOOL_INTEGRATION_FIX,
        True,
    ),
    FailureCategory.CONTEXT_LIMITATION: CategoryPolicy(
        RecoveryAction.REDUCE_SCOPE,
        EscalationPriority.MEDIUM,
        InterventionType.CLARIFICATION,
        False,
    ),
    FailureCategory.BOUNDARY_VIOLATION: CategoryPolicy(
        RecoveryAction.ABORT,
        EscalationPriority.CRITICAL,
        InterventionType.POLICY_DECISION,
        False,
    ),
    FailureCategory.LOGICAL_IMPOSSIBILITY: CategoryPolicy(
        RecoveryAction.ABORT,
        EscalationPriority.CRITICAL,
        InterventionType.CLARIFICATION,
        False,
    ),
    FailureCategory.RESOURCE_EXHAUSTION: CategoryPolicy(
        RecoveryAction.REQUEST_BUDGET,
        EscalationPriority.HIGH,
        InterventionType.POLICY_DECISION,
        False,
    ),
    FailureCategory.TEMPORARY_OUTAGE: CategoryPolicy(
        RecoveryAction.RETRY_WITH_BACKOFF,
        EscalationPriority.NO_ESCALATION,
        InterventionType.TOOL_INTEGRATION_FIX,
        True,
    ),
}


@dataclass(slots=True)
class ExecutionContext:
    """What the classifier may inspect besides the error itself."""

    tools_used: tuple[str, ...] = ()
    message_gap_seconds: float | None = None
    required_skills: dict[Skill, float] = field(default_factory=dict)
    held_skills: dict[Skill, float] = field(default_factory=dict)
    budget_limit: float | None = None
    budget_spent: float = 0.0
    tokens_used: int | None = None
    token_limit: int | None = None
    candidate_tools: int | None = None


@dataclass(slots=True)
class _Match:
    category: FailureCategory
    rule: str
    confidence: float
    evidence: dict[str, object]


class FailureClassifier:
    """Ordered rule set mapping an `ExecutionError` to one `FailureAnalysis`."""

    def __init__(self, settings: RecoverySettings | None = None) -> None:
        self.settings = settings or RecoverySettings()

    def classify(
        self,
        task_id: str,
        error: ExecutionError,
        context: ExecutionContext | None = None,
    ) -> FailureAnalysis:
        context = context or ExecutionContext()
        haystack = _normalize_text(error)
        match = self._match(error=error, context=context, haystack=haystack)
        policy = CATEGORY_POLICY[match.category]
        confidence = _blend_confidence(match.confidence, error.signals.get("confidence"))
        evidence: dict[str, object] = {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "task_id": task_id,
            "error_code": error.code,
            "tool_id": error.tool_id,
            "tools_used": list(context.tools_used),
            **match.evidence,
        }
        return FailureAnalysis(
            category=match.category,
            root_cause=error.summary(),
            confidence=confidence,
            recommended_action=policy.action,
            escalation_priority=policy.priority,
            intervention=policy.intervention,
            matched_rule=match.rule,
            evidence=evidence,
        )

    def _match(  # noqa: C901, PLR0911
        self,
        *,
        error: ExecutionError,
        context: ExecutionContext,
        haystack: str,
    ) -> _Match:
        pattern = _first_match(haystack, _BOUNDARY_PATTERNS)
        if pattern is not None or error.code == "boundary_violation":
            return _Match(
                FailureCategory.BOUNDARY_VIOLATION,
                "boundary_violation",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )

        pattern = _first_match(haystack, _IMPOSSIBILITY_PATTERNS)
        if pattern is not None:
            return _Match(
                FailureCategory.LOGICAL_IMPOSSIBILITY,
                "logical_impossibility",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )

        if error.code == "budget_exceeded":
            return _Match(
                FailureCategory.RESOURCE_EXHAUSTION,
                "budget_exceeded",
                CONTEXT_CONFIDENCE,
                {"budget_limit": context.budget_limit, "budget_spent": context.budget_spent},
            )
        pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
        if pattern is not None:
            return _Match(
                FailureCategory.RESOURCE_EXHAUSTION,
                "billing_or_quota",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )

        pattern = _first_match(haystack, _CONTEXT_PATTERNS)
        if pattern is not None:
            return _Match(
                FailureCategory.CONTEXT_LIMITATION,
                "context_limit_pattern",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )
        if (
            context.tokens_used is not None
            and context.token_limit is not None
            and context.tokens_used >= context.token_limit
        ):
            return _Match(
                FailureCategory.CONTEXT_LIMITATION,
                "token_limit_reached",
                CONTEXT_CONFIDENCE,
                {"tokens_used": context.tokens_used, "token_limit": context.token_limit},
            )

        missing = _missing(context)
        if error.code in _CAPABILITY_CODES or missing or context.candidate_tools == 0:
            return _Match(
                FailureCategory.CAPABILITY_GAP,
                "capability_gap",
                CONTEXT_CONFIDENCE,
                {"missing_skills": {skill.value: gap for skill, gap in missing.items()}},
            )

        if error.timed_out or error.transient:
            return _Match(
                FailureCategory.TEMPORARY_OUTAGE,
                "timeout" if error.timed_out else "transient_flag",
                CONTEXT_CONFIDENCE,
                {"timed_out": error.timed_out},
            )
        pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS) or _first_match(
            haystack,
            _GENERIC_TRANSIENT_PATTERNS,
        )
        if pattern is not None:
            return _Match(
                FailureCategory.TEMPORARY_OUTAGE,
                "transient_pattern",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )

        gap = context.message_gap_seconds
        if gap is not None and gap >= self.settings.coordination_gap_seconds:
            return _Match(
                FailureCategory.COORDINATION_FAILURE,
                "message_gap",
                CONTEXT_CONFIDENCE,
                {"message_gap_seconds": gap},
            )
        pattern = _first_match(haystack, _COORDINATION_PATTERNS)
        if pattern is not None:
            return _Match(
                FailureCategory.COORDINATION_FAILURE,
                "coordination_pattern",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )

        pattern = _first_match(haystack, _AMBIGUITY_PATTERNS)
        if pattern is not None:
            return _Match(
                FailureCategory.AMBIGUITY,
                "ambiguity_pattern",
                PATTERN_CONFIDENCE,
                {"matched_pattern": pattern},
            )
        ambiguity = error.signals.get("ambiguity")
        if ambiguity is not None and _clamp(ambiguity) >= self.settings.ambiguity_threshold:
            return _Match(
                FailureCategory.AMBIGUITY,
                "provider_ambiguity",
                CONTEXT_CONFIDENCE,
                {"ambiguity": _clamp(ambiguity)},
            )

        return _Match(
            FailureCategory.TOOL_FAILURE,
            "fallback_tool_failure",
            FALLBACK_CONFIDENCE,
            {},
        )


def looks_transient(text: str) -> bool:
    """True when provider output reads like a rate limit or a passing outage."""

    haystack = text.lower()
    return (
        _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS) is not None
        or _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS) is not None
    )


def _missing(context: ExecutionContext) -> dict[Skill, float]:
    if not context.required_skills or not context.held_skills:
        return {}
    gaps: dict[Skill, float] = {}
    for skill, level in context.required_skills.items():
        held = context.held_skills.get(skill, 0.0)
        if held < level:
            gaps[skill] = round(level - held, 4)
    return gaps


def _blend_confidence(rule_confidence: float, provider_confidence: float | None) -> float:
    if provider_confidence is None:
        return rule_confidence
    return round((rule_confidence + _clamp(provider_confidence)) / 2, 4)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _normalize_text(error: ExecutionError) -> str:
    return f"{error.code}\n{error.detail}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
