"""Marginal-return (sunk-cost) analysis of a task's revision history."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskcrew.config import RevisionSettings
from taskcrew.orchestrator.models import RevisionAdvice, RevisionRecord, RevisionTrend

if TYPE_CHECKING:
    from taskcrew.orchestrator.repository import OrchestratorRepository

MIN_COST = 1e-4


@dataclass(slots=True)
class RevisionRecommendation:
    advice: RevisionAdvice
    trend: RevisionTrend
    latest_roi: float | None
    trend_ratio: float | None
    predicted_next_roi: float | None
    cumulative_cost: float
    reason: str

    @property
    def should_continue(self) -> bool:
        return self.advice == RevisionAdvice.CONTINUE_REVISIONS


def revision_roi(record: RevisionRecord) -> float:
    return (record.quality_after - record.quality_before) / max(record.cost, MIN_COST)


class MarginalReturnAnalyzer:
    """Classify the ROI trend of successive revisions and recommend whether to go on."""

    def __init__(
        self,
        settings: RevisionSettings | None = None,
        repository: OrchestratorRepository | None = None,
    ) -> None:
        self.settings = settings or RevisionSettings()
        self.repository = repository

    def analyze(self, task_id: str) -> RevisionRecommendation:
        if self.repository is None:
            raise RuntimeError("MarginalReturnAnalyzer.analyze requires a repository.")
        history = self.repository.list_revisions(task_id=task_id)
        return self.evaluate(history, cumulative_cost=self.repository.task_cost(task_id=task_id))

    def evaluate(
        self,
        history: Sequence[RevisionRecord],
        *,
        cumulative_cost: float | None = None,
    ) -> RevisionRecommendation:
        total_cost = (
            cumulative_cost
            if cumulative_cost is not None
            else sum(record.cost for record in history)
        )
        return self.evaluate_rois(
            [revision_roi(record) for record in history],
            cumulative_cost=total_cost,
        )

    def evaluate_rois(
        self,
        rois: Sequence[float],
        *,
        cumulative_cost: float = 0.0,
    ) -> RevisionRecommendation:
        """Same rules applied to an already computed ROI series."""

        if not rois:
            return self._recommend(
                trend=RevisionTrend.STABLE,
                latest=None,
                ratio=None,
                predicted=None,
                cumulative_cost=cumulative_cost,
            )
        latest = rois[-1]
        ratio = 1.0 if len(rois) == 1 else self.trend_ratio(rois[-2], latest)
        return self._recommend(
            trend=self.classify_trend(ratio),
            latest=latest,
            ratio=ratio,
            predicted=latest * ratio,
            cumulative_cost=cumulative_cost,
        )

    @staticmethod
    def trend_ratio(previous: float, latest: float) -> float:
        if previous <= 0:
            # No positive baseline: any gain counts as improving, otherwise collapsed.
            return 1.0 if latest > previous else 0.0
        return latest / previous

    def classify_trend(self, ratio: float) -> RevisionTrend:
        if ratio < self.settings.collapsed_ratio:
            return RevisionTrend.COLLAPSED
        if ratio < self.settings.diminishing_ratio:
            return RevisionTrend.DIMINISHING
        if ratio > self.settings.improving_ratio:
            return RevisionTrend.IMPROVING
        return RevisionTrend.STABLE

    def _recommend(
        self,
        *,
        trend: RevisionTrend,
        latest: float | None,
        ratio: float | None,
        predicted: float | None,
        cumulative_cost: float,
    ) -> RevisionRecommendation:
        if trend == RevisionTrend.COLLAPSED:
            advice = RevisionAdvice.ABANDON
            reason = "revision returns collapsed"
        elif predicted is not None and predicted < self.settings.strong_abort_roi:
            advice = RevisionAdvice.STRONGLY_ABORT
            reason = f"predicted next ROI {predicted:.4f} below {self.settings.strong_abort_roi}"
        elif predicted is not None and predicted < self.settings.consider_abort_roi:
            advice = RevisionAdvice.CONSIDER_ABORTING
            reason = f"predicted next ROI {predicted:.4f} below {self.settings.consider_abort_roi}"
        elif cumulative_cost > self.settings.absolute_cost_ceiling:
            advice = RevisionAdvice.CONSIDER_ABORTING
            reason = (
                f"cumulative cost {cumulative_cost:.4f} above ceiling "
                f"{self.settings.absolute_cost_ceiling}"
            )
        else:
            advice = RevisionAdvice.CONTINUE_REVISIONS
            reason = "revisions still pay off" if latest is not None else "no revision history"
        return RevisionRecommendation(
            advice=advice,
            trend=trend,
            latest_roi=latest,
            trend_ratio=ratio,
            predicted_next_roi=predicted,
            cumulative_cost=cumulative_cost,
            reason=reason,
        )
