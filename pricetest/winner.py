"""
Goal-aware winner analysis for manual winner confirmation.

This is a heuristic score, not a hypothesis test: confidence grows with the
square root of the sample, the size of the improvement and the age of the
test. Stopped tests get looser thresholds so a merchant can still pick a
winner from a test cut short. The rigorous verdict lives in stats.py.
"""
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .domain import DEFAULT_GOAL, STATUS_STOPPED, PriceTestConfig, VariationPerformance

STATUS_WINNER = "Winner"
STATUS_SIGNIFICANT = "Significant"
STATUS_NOT_SIGNIFICANT = "Not Significant"


@dataclass(frozen=True)
class Thresholds:
    min_confidence: float
    min_improvement: float
    min_sample_size: int


RUNNING_WINNER = Thresholds(85, 3, 30)
RUNNING_SIGNIFICANT = Thresholds(75, 1, 20)
STOPPED_WINNER = Thresholds(70, 1, 15)
STOPPED_SIGNIFICANT = Thresholds(60, 0.5, 10)


@dataclass(frozen=True)
class AnalyzedVariation:
    performance: VariationPerformance
    metric: float
    improvement: float
    confidence: int
    status: str

    @property
    def variation(self) -> str:
        return self.performance.variation

    @property
    def is_winner(self) -> bool:
        return self.status == STATUS_WINNER

    def to_dict(self) -> Dict[str, Any]:
        data = self.performance.to_dict()
        data.update(
            {
                "goalMetric": self.metric,
                "improvement": self.improvement,
                "confidence": self.confidence,
                "status": self.status,
                "isWinner": self.is_winner,
            }
        )
        return data


@dataclass(frozen=True)
class WinnerAnalysis:
    winner: Optional[AnalyzedVariation]
    reason: str
    confidence_level: float = 0
    total_visitors: int = 0
    test_duration: int = 0
    best_metric: float = 0.0
    control_conversion_rate: float = 0.0
    revenue_impact: float = 0.0
    variations: List[AnalyzedVariation] = field(default_factory=list)
    manually_confirmed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "winner": self.winner.to_dict() if self.winner else None,
            "reason": self.reason,
            "confidenceLevel": self.confidence_level,
            "totalVisitors": self.total_visitors,
            "testDuration": self.test_duration,
            "bestConversionRate": self.best_metric,
            "controlConversionRate": self.control_conversion_rate,
            "revenueImpact": self.revenue_impact,
            "variations": [v.to_dict() for v in self.variations],
            "manuallyConfirmed": self.manually_confirmed,
        }


def goal_metric(performance: VariationPerformance, goal: str) -> float:
    if goal == "conversion_rate":
        return performance.conversion_rate
    if goal == "average_order_value":
        return performance.revenue / performance.conversions if performance.conversions > 0 else 0.0
    if goal == "add_to_cart_rate":
        return performance.add_to_cart / performance.visitors if performance.visitors > 0 else 0.0
    # revenue_per_visitor and anything unknown
    return performance.revenue / performance.visitors if performance.visitors > 0 else 0.0


def heuristic_confidence(sample_size: int, improvement: float, duration_days: int) -> float:
    score = math.sqrt(sample_size) * 0.5 + abs(improvement) * 0.3 + (10 if duration_days > 7 else 0)
    return min(95.0, max(60.0, score))


def _passes(confidence: float, improvement: float, sample_size: int, t: Thresholds) -> bool:
    return confidence >= t.min_confidence and improvement > t.min_improvement and sample_size >= t.min_sample_size


def classify(confidence: float, improvement: float, sample_size: int, stopped: bool) -> str:
    winner, significant = (STOPPED_WINNER, STOPPED_SIGNIFICANT) if stopped else (RUNNING_WINNER, RUNNING_SIGNIFICANT)
    if _passes(confidence, improvement, sample_size, winner):
        return STATUS_WINNER
    if _passes(confidence, improvement, sample_size, significant):
        return STATUS_SIGNIFICANT
    return STATUS_NOT_SIGNIFICANT


def analyze_winner(
    performance: Sequence[VariationPerformance],
    test: PriceTestConfig,
    now: datetime,
) -> WinnerAnalysis:
    control = next((p for p in performance if p.is_control), None)
    if control is None:
        return WinnerAnalysis(
            winner=None,
            reason="No control variant found. Please ensure one variation is marked as control.",
        )

    goal = test.selected_goal or DEFAULT_GOAL
    stopped = test.status == STATUS_STOPPED
    total_visitors = sum(p.visitors for p in performance)
    started = test.created_at or now
    duration_days = max(0, (now - started).days)

    control_metric = goal_metric(control, goal)
    denominator = control_metric if control_metric != 0 else 1

    analyzed = []
    for p in performance:
        metric = goal_metric(p, goal)
        improvement = (metric - control_metric) / denominator * 100
        confidence = heuristic_confidence(p.visitors, improvement, duration_days)
        analyzed.append(
            AnalyzedVariation(
                performance=p,
                metric=metric,
                improvement=improvement,
                confidence=int(math.floor(confidence + 0.5)),
                status=classify(confidence, improvement, p.visitors, stopped),
            )
        )

    winner = next((a for a in analyzed if a.is_winner), None)
    recommended = winner
    if recommended is None:
        recommended = analyzed[0]
        for candidate in analyzed[1:]:
            if candidate.performance.conversion_rate > recommended.performance.conversion_rate:
                recommended = candidate

    if winner is not None:
        reason = (
            f"Winner: {winner.variation} shows {winner.improvement:.1f}% improvement "
            f"with {winner.confidence}% confidence"
        )
    else:
        reason = (
            f"Best Performer: {recommended.variation} shows {recommended.improvement:.1f}% improvement "
            f"with {recommended.confidence}% confidence (not statistically significant)"
        )

    return WinnerAnalysis(
        winner=recommended,
        reason=reason,
        confidence_level=recommended.confidence,
        total_visitors=total_visitors,
        test_duration=duration_days,
        best_metric=max(a.metric for a in analyzed),
        control_conversion_rate=control.conversion_rate,
        revenue_impact=(recommended.performance.revenue - control.revenue) * (total_visitors / 1000),
        variations=analyzed,
    )


def confirm_winner(analysis: WinnerAnalysis, label: str) -> WinnerAnalysis:
    """Merchant override: mark `label` as the winner with full confidence."""
    chosen = next((a for a in analysis.variations if a.variation == label), None)
    if chosen is None:
        raise ValueError(f"Variation {label} is not part of this analysis")
    return replace(
        analysis,
        winner=chosen,
        reason=f"Manually selected: {label} chosen as winner",
        confidence_level=100,
        manually_confirmed=True,
    )
