"""Review decisions: quality scoring and the approve / revise / reject policy."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from taskcrew.config import RevisionSettings
from taskcrew.orchestrator.marginal_return import MarginalReturnAnalyzer, RevisionRecommendation
from taskcrew.orchestrator.models import ReviewDecision, RevisionAdvice, RevisionRecord, TaskView

INSUFFICIENT_BUDGET_REASON = "insufficient remaining budget"
REVISION_CAP_REASON = "revision cap reached"

_TOKEN = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "that",
        "this",
        "from",
        "into",
        "must",
        "should",
        "have",
        "are",
        "all",
        "any",
        "each",
    },
)
CRITERION_MATCH_RATIO = 0.5


@dataclass(slots=True)
class QualityAssessment:
    score: float
    satisfied: list[str] = field(default_factory=list)
    unmet: list[str] = field(default_factory=list)


class QualityEvaluator(Protocol):
    def evaluate(self, task: TaskView, output: Any) -> QualityAssessment: ...


class CriteriaMatchEvaluator:
    """Share of acceptance criteria whose significant words appear in the output.

    A criterion counts as satisfied when at least half of its significant
    tokens occur in the output text. Tasks without criteria score 1.0 for any
    non-empty output.
    """

    def evaluate(self, task: TaskView, output: Any) -> QualityAssessment:
        text = _flatten(output).lower()
        if not task.acceptance_criteria:
            return QualityAssessment(score=1.0 if text.strip() else 0.0)
        output_tokens = set(_TOKEN.findall(text))
        satisfied: list[str] = []
        unmet: list[str] = []
        for criterion in task.acceptance_criteria:
            tokens = _significant_tokens(criterion)
            if not tokens:
                satisfied.append(criterion)
                continue
            hits = sum(1 for token in tokens if token in output_tokens)
            if hits / len(tokens) >= CRITERION_MATCH_RATIO:
                satisfied.append(criterion)
            else:
                unmet.append(criterion)
        score = len(satisfied) / len(task.acceptance_criteria)
        return QualityAssessment(score=round(score, 4), satisfied=satisfied, unmet=unmet)


@dataclass(slots=True)
class BudgetOutlook:
    """Remaining team budget and what reaching the threshold is expected to cost."""

    remaining: float | None
    estimated_cost_to_threshold: float


@dataclass(slots=True)
class ReviewOutcome:
    decision: ReviewDecision
    reason: str
    quality: float
    recommendation: RevisionRecommendation | None = None
    estimated_cost_to_threshold: float | None = None


def estimate_cost_to_threshold(
    *,
    quality: float,
    threshold: float,
    history: Sequence[RevisionRecord],
    fallback_revision_cost: float,
) -> float:
    """(quality gap / average gain per revision) * average revision cost.

    Without revision history one more pass is assumed to close the gap at the
    cost of the last pass. Non-positive average gain makes the target
    unreachable (infinite cost).
    """

    gap = threshold - quality
    if gap <= 0:
        return 0.0
    if not history:
        return max(0.0, fallback_revision_cost)
    average_gain = sum(item.quality_after - item.quality_before for item in history) / len(
        history,
    )
    if average_gain <= 0:
        return float("inf")
    average_cost = sum(item.cost for item in history) / len(history)
    return (gap / average_gain) * average_cost


class ReviewPolicy:
    """Decide the review transition for one completed pass."""

    def __init__(
        self,
        settings: RevisionSettings | None = None,
        analyzer: MarginalReturnAnalyzer | None = None,
    ) -> None:
        self.settings = settings or RevisionSettings()
        self.analyzer = analyzer or MarginalReturnAnalyzer(self.settings)

    def decide(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        quality: float,
        history: Sequence[RevisionRecord],
        budget: BudgetOutlook,
        cumulative_cost: float,
    ) -> ReviewOutcome:
        if quality >= task.acceptance_threshold:
            return ReviewOutcome(
                decision=ReviewDecision.APPROVED,
                reason=f"quality {quality:.2f} meets threshold {task.acceptance_threshold:.2f}",
                quality=quality,
            )
        if task.revision_count >= task.max_revisions:
            return ReviewOutcome(
                decision=ReviewDecision.REJECTED,
                reason=REVISION_CAP_REASON,
                quality=quality,
            )
        if budget.remaining is not None and budget.estimated_cost_to_threshold > budget.remaining:
            return ReviewOutcome(
                decision=ReviewDecision.REJECTED,
                reason=INSUFFICIENT_BUDGET_REASON,
                quality=quality,
                estimated_cost_to_threshold=budget.estimated_cost_to_threshold,
            )

        recommendation = self.analyzer.evaluate(history, cumulative_cost=cumulative_cost)
        if recommendation.advice in (RevisionAdvice.ABANDON, RevisionAdvice.STRONGLY_ABORT) or (
            recommendation.advice == RevisionAdvice.CONSIDER_ABORTING
            and not self.settings.continue_on_consider_aborting
        ):
            return ReviewOutcome(
                decision=ReviewDecision.REJECTED,
                reason=f"{recommendation.advice.value}: {recommendation.reason}",
                quality=quality,
                recommendation=recommendation,
                estimated_cost_to_threshold=budget.estimated_cost_to_threshold,
            )
        return ReviewOutcome(
            decision=ReviewDecision.REVISION_REQUESTED,
            reason=recommendation.reason,
            quality=quality,
            recommendation=recommendation,
            estimated_cost_to_threshold=budget.estimated_cost_to_threshold,
        )


def _significant_tokens(text: str) -> list[str]:
    return [
        token
        for token in _TOKEN.findall(text.lower())
        if len(token) > 2 and token not in _STOPWORDS
    ]


def _flatten(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)
