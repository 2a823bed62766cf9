"""Turn a failure analysis into a concrete recovery step."""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from taskcrew.config import RecoverySettings
from taskcrew.orchestrator.failure_classifier import CATEGORY_POLICY
from taskcrew.orchestrator.models import (
    EscalationPriority,
    FailureAnalysis,
    FailureCategory,
    InterventionType,
)


class RecoveryVerdict(str, Enum):
    RETRY = "retry"
    RESELECT_TOOL = "reselect_tool"
    REASSIGN = "reassign"
    DECOMPOSE = "decompose"
    ESCALATE = "escalate"
    ABORT = "abort"


@dataclass(slots=True)
class RecoveryDecision:
    verdict: RecoveryVerdict
    reason: str
    delay_seconds: float = 0.0
    priority: EscalationPriority = EscalationPriority.NO_ESCALATION
    intervention: InterventionType | None = None


class RecoveryEngine:
    """Bounded automatic recovery with exponential backoff and jitter."""

    def __init__(
        self,
        settings: RecoverySettings | None = None,
        *,
        random_source: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or RecoverySettings()
        self._random = random_source or random.Random()  # noqa: S311
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""

        base = self.settings.base_delay_seconds * (
            self.settings.multiplier ** max(0, attempt - 1)
        )
        jitter = self.settings.jitter_ratio
        return base * self._random.uniform(1 - jitter, 1 + jitter)

    def decide(  # noqa: PLR0911
        self,
        analysis: FailureAnalysis,
        *,
        attempt: int,
        has_fallback_tool: bool = False,
        has_alternative_agent: bool = False,
        can_decompose: bool = False,
    ) -> RecoveryDecision:
        """Pick the next step for a failure seen on automatic attempt number `attempt`."""

        category = analysis.category
        policy = CATEGORY_POLICY[category]

        if category in (FailureCategory.LOGICAL_IMPOSSIBILITY, FailureCategory.BOUNDARY_VIOLATION):
            return RecoveryDecision(
                verdict=RecoveryVerdict.ABORT,
                reason=analysis.root_cause,
                priority=policy.priority,
                intervention=policy.intervention,
            )

        if attempt >= self.settings.max_attempts:
            return self._escalate(
                analysis,
                reason=f"automatic recovery exhausted after {attempt} attempts",
                priority=policy.priority.at_least(EscalationPriority.MEDIUM),
            )

        if category == FailureCategory.TEMPORARY_OUTAGE:
            return RecoveryDecision(
                verdict=RecoveryVerdict.RETRY,
                reason="transient failure",
                delay_seconds=self.backoff_delay(attempt),
            )
        if category == FailureCategory.TOOL_FAILURE and has_fallback_tool:
            return RecoveryDecision(
                verdict=RecoveryVerdict.RESELECT_TOOL,
                reason="healthy fallback tool available",
            )
        if category == FailureCategory.CAPABILITY_GAP and has_alternative_agent:
            return RecoveryDecision(
                verdict=RecoveryVerdict.REASSIGN,
                reason="alternative eligible agent available",
            )
        if category == FailureCategory.COORDINATION_FAILURE and can_decompose:
            return RecoveryDecision(
                verdict=RecoveryVerdict.DECOMPOSE,
                reason="splitting remaining steps into subtasks",
            )
        return self._escalate(analysis, reason=policy.action.value, priority=policy.priority)

    def wait(self, decision: RecoveryDecision) -> None:
        if decision.delay_seconds > 0:
            self._sleep(decision.delay_seconds)

    def _escalate(
        self,
        analysis: FailureAnalysis,
        *,
        reason: str,
        priority: EscalationPriority,
    ) -> RecoveryDecision:
        return RecoveryDecision(
            verdict=RecoveryVerdict.ESCALATE,
            reason=reason,
            priority=priority.at_least(EscalationPriority.LOW),
            intervention=analysis.intervention,
        )
