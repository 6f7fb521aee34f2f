from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math

import pandas as pd

from . import config
from .domain import ConfidenceInterval, StatisticalResult, VariationPerformance
from .exceptions import InsufficientDataError

logger = logging.getLogger(__name__)

METHOD_CHI_SQUARE = "chi_square"
METHOD_FISHERS_EXACT = "fishers_exact"
METHOD_INSUFFICIENT_DATA = "insufficient_data"
METHOD_NONE = "none"

Z_95 = 1.96

# below these counts the small-sample path is used
SMALL_SAMPLE_VISITORS = 30
SMALL_SAMPLE_CONVERSIONS = 5

# Abramowitz and Stegun 7.1.26
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911


def erf(x: float) -> float:
    """
    Error function, Abramowitz and Stegun rational approximation.
    Kept instead of math.erf so results match the numbers merchants
    have already seen for running tests.
    """
    sign = 1 if x >= 0 else -1
    x = abs(x)
    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(x: float) -> float:
    """
    Cumulative distribution function for a standard normal variable.
    """
    return 0.5 * (1 + erf(x / math.sqrt(2)))


def _confidence(p_value: float) -> float:
    return (1 - p_value) * 100


def chi_square_p_value(chi_square: float, degrees_of_freedom: int = 1) -> float:
    if degrees_of_freedom == 1:
        return 2 * (1 - normal_cdf(math.sqrt(chi_square)))
    return 1 - normal_cdf(math.sqrt(chi_square))


def chi_square_test(
    control_conversions: int,
    control_visitors: int,
    test_conversions: int,
    test_visitors: int,
) -> Tuple[float, float]:
    """
    Chi-square test of independence on the 2x2 table
    (converted / not converted x control / test).

    Returns (p_value, confidence_percent).
    """
    control_non = control_visitors - control_conversions
    test_non = test_visitors - test_conversions

    total_visitors = control_visitors + test_visitors
    total_conversions = control_conversions + test_conversions
    total_non = control_non + test_non

    observed_expected = [
        (control_conversions, control_visitors * total_conversions / total_visitors),
        (test_conversions, test_visitors * total_conversions / total_visitors),
        (control_non, control_visitors * total_non / total_visitors),
        (test_non, test_visitors * total_non / total_visitors),
    ]

    # an empty margin (nobody or everybody converted) carries no evidence
    if any(expected == 0 for _, expected in observed_expected):
        chi_square = 0.0
    else:
        chi_square = sum((obs - exp) ** 2 / exp for obs, exp in observed_expected)

    p_value = chi_square_p_value(chi_square, 1)
    return p_value, _confidence(p_value)


def _pooled_standard_error(
    control_conversions: int,
    control_visitors: int,
    test_conversions: int,
    test_visitors: int,
) -> float:
    pooled = (control_conversions + test_conversions) / (control_visitors + test_visitors)
    return math.sqrt(pooled * (1 - pooled) * (1 / control_visitors + 1 / test_visitors))


def normal_approximation_test(
    control_conversions: int,
    control_visitors: int,
    test_conversions: int,
    test_visitors: int,
) -> Tuple[float, float]:
    """
    Two-proportion z-test, used for small samples.

    Reported under the "fishers_exact" method name for compatibility; it is
    a normal approximation, not the hypergeometric exact test.
    """
    control_rate = control_conversions / control_visitors
    test_rate = test_conversions / test_visitors

    se = _pooled_standard_error(control_conversions, control_visitors, test_conversions, test_visitors)
    z = (test_rate - control_rate) / se if se > 0 else 0.0

    p_value = max(0.0, min(1.0, 2 * (1 - normal_cdf(abs(z)))))
    return p_value, _confidence(p_value)


def confidence_interval(
    control_rate: float,
    test_rate: float,
    control_visitors: int,
    test_visitors: int,
) -> ConfidenceInterval:
    """95% interval for the difference in conversion rates (unpooled SE)."""
    difference = test_rate - control_rate
    se = math.sqrt(
        control_rate * (1 - control_rate) / control_visitors
        + test_rate * (1 - test_rate) / test_visitors
    )
    margin = Z_95 * se
    return ConfidenceInterval(lower=difference - margin, upper=difference + margin, difference=difference)


def statistical_power(
    control_conversions: int,
    control_visitors: int,
    test_conversions: int,
    test_visitors: int,
) -> float:
    """
    Approximate power to detect the observed effect at alpha = 0.05.
    """
    control_rate = control_conversions / control_visitors
    test_rate = test_conversions / test_visitors
    effect = abs(test_rate - control_rate)

    se = _pooled_standard_error(control_conversions, control_visitors, test_conversions, test_visitors)
    if se == 0:
        return 0.0

    z_beta = effect / se - Z_95
    return max(0.0, min(1.0, normal_cdf(z_beta)))


def choose_method(
    control_conversions: int,
    control_visitors: int,
    test_conversions: int,
    test_visitors: int,
) -> str:
    small_sample = control_visitors < SMALL_SAMPLE_VISITORS or test_visitors < SMALL_SAMPLE_VISITORS
    few_conversions = (
        control_conversions < SMALL_SAMPLE_CONVERSIONS or test_conversions < SMALL_SAMPLE_CONVERSIONS
    )
    return METHOD_FISHERS_EXACT if small_sample and few_conversions else METHOD_CHI_SQUARE


def compare_to_control(control: VariationPerformance, variation: VariationPerformance) -> StatisticalResult:
    """
    Full comparison of one challenger against control.

    Raises InsufficientDataError when either group has no visitors.
    """
    if control.visitors == 0 or variation.visitors == 0:
        raise InsufficientDataError(f"no visitors for {control.variation} or {variation.variation}")

    cc, cv = control.conversions, control.visitors
    tc, tv = variation.conversions, variation.visitors

    control_rate = cc / cv
    test_rate = tc / tv
    lift = (test_rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0

    method = choose_method(cc, cv, tc, tv)
    if method == METHOD_FISHERS_EXACT:
        p_value, confidence = normal_approximation_test(cc, cv, tc, tv)
    else:
        p_value, confidence = chi_square_test(cc, cv, tc, tv)

    # practically negligible lifts never count, however small the p-value
    is_significant = p_value < config.SIGNIFICANCE_ALPHA and abs(lift) >= config.MIN_LIFT_PERCENT

    return StatisticalResult(
        variation=variation.variation,
        lift=lift,
        confidence=confidence,
        p_value=p_value,
        is_significant=is_significant,
        method=method,
        confidence_interval=confidence_interval(control_rate, test_rate, cv, tv),
        sample_size=cv + tv,
        power=statistical_power(cc, cv, tc, tv),
    )


@dataclass(frozen=True)
class SignificanceReport:
    confidence: float
    p_value: float
    winner: Optional[str]
    lift: float
    recommendation: str
    method: str
    all_results: List[StatisticalResult] = field(default_factory=list)
    overall_power: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": round(self.confidence, 1),
            "pValue": round(self.p_value, 4),
            "winner": self.winner,
            "lift": round(self.lift, 1),
            "recommendation": self.recommendation,
            "allResults": [r.to_dict() for r in self.all_results],
            "overallPower": round(self.overall_power * 100),
            "method": self.method,
        }


def _neutral_report(recommendation: str) -> SignificanceReport:
    return SignificanceReport(
        confidence=0.0,
        p_value=1.0,
        winner=None,
        lift=0.0,
        recommendation=recommendation,
        method=METHOD_NONE,
    )


def calculate_statistical_significance(
    performance: Sequence[VariationPerformance],
    control_label: Optional[str],
) -> SignificanceReport:
    """
    Compare every non-control variation with control and pick a winner.

    Never raises: a missing control or missing challengers yield a neutral,
    non-actionable report; zero-visitor groups are reported as
    insufficient_data.
    """
    if not control_label:
        return _neutral_report("No control variation found")

    control = next((p for p in performance if p.variation == control_label), None)
    if control is None:
        return _neutral_report("Control variation not found in performance data")

    challengers = [p for p in performance if p.variation != control_label]
    if not challengers:
        return _neutral_report("No test variations found")

    results: List[StatisticalResult] = []
    for variation in challengers:
        try:
            results.append(compare_to_control(control, variation))
        except InsufficientDataError as err:
            logger.debug("Skipping significance for %s: %s", variation.variation, err)
            results.append(
                StatisticalResult(
                    variation=variation.variation,
                    lift=0.0,
                    confidence=0.0,
                    p_value=1.0,
                    is_significant=False,
                    method=METHOD_INSUFFICIENT_DATA,
                    sample_size=control.visitors + variation.visitors,
                )
            )

    significant = [r for r in results if r.is_significant]
    winner = max(significant, key=lambda r: r.lift) if significant else None
    overall_power = sum(r.power for r in results) / len(results)

    if winner is not None:
        return SignificanceReport(
            confidence=winner.confidence,
            p_value=winner.p_value,
            winner=winner.variation,
            lift=winner.lift,
            recommendation=(
                f"Winner: {winner.variation} shows {winner.lift:.1f}% improvement "
                f"with {winner.confidence:.1f}% confidence"
            ),
            method=winner.method,
            all_results=results,
            overall_power=overall_power,
        )

    if overall_power < config.POWER_TARGET:
        recommendation = "Insufficient statistical power. Increase sample size or test duration."
    else:
        recommendation = "No statistically significant winner found. Continue testing or increase sample size."

    return SignificanceReport(
        confidence=max(r.confidence for r in results),
        p_value=min(r.p_value for r in results),
        winner=None,
        lift=max(r.lift for r in results),
        recommendation=recommendation,
        method=METHOD_NONE,
        all_results=results,
        overall_power=overall_power,
    )


def load_performance_csv(file_obj) -> List[VariationPerformance]:
    """
    Read a CSV of pre-aggregated counts into VariationPerformance rows.

    Expected columns:
    - variation (e.g. "A", "B")
    - visitors (int)
    - conversions (int)
    Optional: revenue, add_to_cart, is_control. Without is_control the
    first row is the control.
    """
    df = pd.read_csv(file_obj)
    df.columns = [str(c).strip().lower() for c in df.columns]
    required_cols = {"variation", "visitors", "conversions"}
    if not required_cols.issubset(df.columns):
        missing = required_cols - set(df.columns)
        raise ValueError(f"CSV is missing required columns: {', '.join(sorted(missing))}")
    if df.empty:
        raise ValueError("CSV has no rows")

    if "is_control" in df.columns:
        is_control = df["is_control"].astype(str).str.strip().str.lower().isin(["1", "true", "yes"])
    else:
        is_control = pd.Series([i == 0 for i in range(len(df))], index=df.index)

    rows = []
    for idx, row in df.iterrows():
        visitors = int(row["visitors"])
        conversions = int(row["conversions"])
        revenue = float(row["revenue"]) if "revenue" in df.columns and pd.notna(row["revenue"]) else 0.0
        add_to_cart = int(row["add_to_cart"]) if "add_to_cart" in df.columns and pd.notna(row["add_to_cart"]) else 0
        label = str(row["variation"]).strip()
        control = bool(is_control[idx])
        rows.append(
            VariationPerformance(
                variation=label,
                label="Control" if control else f"Variant {label}",
                price=0.0,
                traffic_percentage=0.0,
                visitors=visitors,
                conversions=conversions,
                add_to_cart=add_to_cart,
                conversion_rate=(conversions / visitors) * 100 if visitors > 0 else 0.0,
                revenue=revenue,
                revenue_per_visitor=revenue / visitors if visitors > 0 else 0.0,
                is_control=control,
            )
        )
    return rows
