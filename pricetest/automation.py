"""
Price automation rules.

A rule pairs a condition with an action. Both are parsed from the stored JSON
payload into small frozen dataclasses, so evaluation dispatches on type
instead of on strings. Evaluation is pure: it returns the updated test
snapshot and the audit entries, and the API layer persists both.
"""
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from .domain import STATUS_RUNNING, AutomationSettings, PriceTestConfig, VariationPerformance
from .exceptions import ConfigurationError, PriceTestError, UnknownRuleError
from .stats import calculate_statistical_significance

logger = logging.getLogger(__name__)

SPLIT_TOLERANCE = 0.1


# Conditions -----------------------------------------------------------------

@dataclass(frozen=True)
class PerformanceThreshold:
    kind: ClassVar[str] = "performance_threshold"
    variation: str
    metric: str
    operator: str
    value: float


@dataclass(frozen=True)
class StatisticalSignificance:
    kind: ClassVar[str] = "statistical_significance"
    variation: str
    min_confidence: float = 95.0
    min_lift: float = 0.0


@dataclass(frozen=True)
class TimeBased:
    kind: ClassVar[str] = "time_based"
    window_value: float
    window_unit: str = "days"
    operator: str = "after"


@dataclass(frozen=True)
class TrafficVolume:
    kind: ClassVar[str] = "traffic_volume"
    variation: str
    min_visitors: int


Condition = Union[PerformanceThreshold, StatisticalSignificance, TimeBased, TrafficVolume]


# Actions --------------------------------------------------------------------

@dataclass(frozen=True)
class AdjustPrice:
    kind: ClassVar[str] = "adjust_price"
    variation: str
    adjustment_type: str
    adjustment_value: float
    rounding: Optional[str] = None


@dataclass(frozen=True)
class StopVariation:
    kind: ClassVar[str] = "stop_variation"
    variation: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class RebalanceTraffic:
    kind: ClassVar[str] = "rebalance_traffic"
    strategy: str
    winner_bonus: float = 0.0
    min_traffic: float = 0.0
    custom_split: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ExtendTest:
    kind: ClassVar[str] = "extend_test"
    extension_days: float
    reason: Optional[str] = None


Action = Union[AdjustPrice, StopVariation, RebalanceTraffic, ExtendTest]


@dataclass(frozen=True)
class AutomationRule:
    id: Optional[str]
    condition: Condition
    action: Action
    target: Optional[str] = None


@dataclass(frozen=True)
class AuditLogEntry:
    test_id: str
    action: str
    details: Dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testId": self.test_id,
            "action": self.action,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RuleResult:
    rule_id: Optional[str]
    executed: bool
    reason: Optional[str] = None
    action: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ruleId": self.rule_id, "executed": self.executed}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.action is not None:
            data["action"] = self.action
        if self.error is not None:
            data["error"] = self.error
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class AutomationOutcome:
    test: PriceTestConfig
    results: List[RuleResult] = field(default_factory=list)
    logs: List[AuditLogEntry] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.logs)


# Parsing --------------------------------------------------------------------

def _parse_performance_threshold(data: Dict[str, Any]) -> Condition:
    return PerformanceThreshold(
        variation=str(data["variation"]),
        metric=str(data.get("metric", "")),
        operator=str(data.get("operator", "")),
        value=float(data.get("value", 0)),
    )


def _parse_statistical_significance(data: Dict[str, Any]) -> Condition:
    return StatisticalSignificance(
        variation=str(data["variation"]),
        min_confidence=float(data.get("minConfidence", 95)),
        min_lift=float(data.get("minLift", 0)),
    )


def _parse_time_based(data: Dict[str, Any]) -> Condition:
    window = data.get("timeWindow") or {}
    return TimeBased(
        window_value=float(window.get("value", 0)),
        window_unit=str(window.get("unit", "days")),
        operator=str(data.get("operator", "after")),
    )


def _parse_traffic_volume(data: Dict[str, Any]) -> Condition:
    return TrafficVolume(variation=str(data["variation"]), min_visitors=int(data.get("minVisitors", 0)))


_CONDITION_PARSERS: Dict[str, Callable[[Dict[str, Any]], Condition]] = {
    PerformanceThreshold.kind: _parse_performance_threshold,
    StatisticalSignificance.kind: _parse_statistical_significance,
    TimeBased.kind: _parse_time_based,
    TrafficVolume.kind: _parse_traffic_volume,
}


def _parse_adjust_price(params: Dict[str, Any]) -> Action:
    return AdjustPrice(
        variation=str(params["variation"]),
        adjustment_type=str(params.get("adjustmentType", "")),
        adjustment_value=float(params.get("adjustmentValue", 0)),
        rounding=params.get("rounding"),
    )


def _parse_stop_variation(params: Dict[str, Any]) -> Action:
    return StopVariation(variation=str(params["variation"]), reason=params.get("reason"))


def _parse_rebalance_traffic(params: Dict[str, Any]) -> Action:
    nested = params.get("parameters") or {}
    return RebalanceTraffic(
        strategy=str(params.get("strategy", "")),
        winner_bonus=float(nested.get("winnerBonus", 0)),
        min_traffic=float(nested.get("minTraffic", 0)),
        custom_split=tuple(float(v) for v in nested.get("customSplit") or ()),
    )


def _parse_extend_test(params: Dict[str, Any]) -> Action:
    return ExtendTest(extension_days=float(params.get("extensionDays", 0)), reason=params.get("reason"))


_ACTION_PARSERS: Dict[str, Callable[[Dict[str, Any]], Action]] = {
    AdjustPrice.kind: _parse_adjust_price,
    StopVariation.kind: _parse_stop_variation,
    RebalanceTraffic.kind: _parse_rebalance_traffic,
    ExtendTest.kind: _parse_extend_test,
}


def parse_rule(data: Dict[str, Any]) -> AutomationRule:
    """
    Stored rule payload -> typed rule.

    {"id": ..., "condition": {"type": ..., ...}, "action": "adjust_price",
     "target": ..., "parameters": {...}}
    """
    condition_data = data.get("condition") or {}
    condition_type = condition_data.get("type")
    condition_parser = _CONDITION_PARSERS.get(condition_type)
    if condition_parser is None:
        raise UnknownRuleError(f"Unknown condition type: {condition_type}")

    action_type = data.get("action")
    action_parser = _ACTION_PARSERS.get(action_type)
    if action_parser is None:
        raise UnknownRuleError(f"Unknown action: {action_type}")

    return AutomationRule(
        id=data.get("id"),
        condition=condition_parser(condition_data),
        action=action_parser(data.get("parameters") or {}),
        target=data.get("target"),
    )


# Helpers --------------------------------------------------------------------

def get_metric_value(performance: VariationPerformance, metric: str) -> float:
    if metric == "conversion_rate":
        return performance.conversion_rate
    if metric == "revenue_per_visitor":
        return performance.revenue_per_visitor
    if metric == "total_revenue":
        return performance.revenue
    if metric == "visitors":
        return performance.visitors
    return 0.0


def compare_values(actual: float, operator: str, expected: float) -> bool:
    if operator == "greater_than":
        return actual > expected
    if operator == "less_than":
        return actual < expected
    if operator == "equals":
        return abs(actual - expected) < 0.01
    if operator == "greater_than_or_equal":
        return actual >= expected
    if operator == "less_than_or_equal":
        return actual <= expected
    return False


_TIME_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


def parse_time_window(value: float, unit: str) -> timedelta:
    return _TIME_UNITS.get(unit, _TIME_UNITS["days"]) * value


def _half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def apply_rounding(price: float, rounding: Optional[str]) -> float:
    """
    Round an adjusted price. Every mode is idempotent, so re-running a rule
    on an already rounded price leaves it unchanged.
    """
    if rounding in ("round", "round_to_dollar"):
        return _half_up(price)
    if rounding == "round_up":
        return float(math.ceil(price))
    if rounding == "round_down":
        return float(math.floor(price))
    if rounding == "round_to_cent":
        return math.floor(price * 100 + 0.5) / 100
    return price


def equal_split(count: int) -> List[float]:
    if count == 0:
        raise ConfigurationError("Cannot split traffic across zero variations")
    return [100 / count] * count


def winner_takes_more_split(
    performance: Sequence[VariationPerformance],
    winner_bonus: float,
    min_traffic: float,
) -> List[float]:
    """
    Best-converting variation gets `winner_bonus` percent, the rest share
    the remainder (never below `min_traffic`).
    """
    if len(performance) < 2:
        raise ConfigurationError("winner_takes_more needs at least two variations")
    base = max(min_traffic, (100 - winner_bonus) / (len(performance) - 1))
    winner = performance[0]
    for candidate in performance[1:]:
        if candidate.conversion_rate > winner.conversion_rate:
            winner = candidate
    return [winner_bonus if p.variation == winner.variation else base for p in performance]


def validate_split(split: Sequence[float]) -> None:
    total = sum(split)
    if abs(total - 100) > SPLIT_TOLERANCE:
        raise ConfigurationError(f"Traffic split must sum to 100% (got {total:g})")


# Conditions -----------------------------------------------------------------

def _find(performance: Sequence[VariationPerformance], label: str) -> Optional[VariationPerformance]:
    return next((p for p in performance if p.variation == label), None)


def evaluate_condition(
    condition: Condition,
    performance: Sequence[VariationPerformance],
    test: PriceTestConfig,
    now: datetime,
) -> bool:
    if isinstance(condition, PerformanceThreshold):
        target = _find(performance, condition.variation)
        if target is None:
            return False
        return compare_values(get_metric_value(target, condition.metric), condition.operator, condition.value)

    if isinstance(condition, StatisticalSignificance):
        control = next((p for p in performance if p.is_control), None)
        if control is None or _find(performance, condition.variation) is None:
            return False
        report = calculate_statistical_significance(performance, control.variation)
        result = next((r for r in report.all_results if r.variation == condition.variation), None)
        if result is None:
            return False
        return result.confidence >= condition.min_confidence and abs(result.lift) >= condition.min_lift

    if isinstance(condition, TimeBased):
        started = test.started_at or test.created_at
        if started is None:
            return False
        elapsed = now - started
        window = parse_time_window(condition.window_value, condition.window_unit)
        if condition.operator == "after":
            return elapsed >= window
        if condition.operator == "before":
            return elapsed <= window
        return False

    if isinstance(condition, TrafficVolume):
        target = _find(performance, condition.variation)
        return target is not None and target.visitors >= condition.min_visitors

    raise UnknownRuleError(f"Unknown condition type: {type(condition).__name__}")


# Actions --------------------------------------------------------------------

ActionOutput = Tuple[PriceTestConfig, Dict[str, Any], Optional[Dict[str, Any]]]


def _adjust_price(action: AdjustPrice, test: PriceTestConfig, performance, now) -> ActionOutput:
    variation = test.variation(action.variation)
    if variation is None:
        raise ConfigurationError(f"Variation {action.variation} not found")

    current = variation.price
    if action.adjustment_type == "percentage":
        new_price = current * (1 + action.adjustment_value / 100)
    elif action.adjustment_type == "fixed_amount":
        new_price = current + action.adjustment_value
    elif action.adjustment_type == "set_to":
        new_price = action.adjustment_value
    else:
        raise UnknownRuleError(f"Unknown adjustment type: {action.adjustment_type}")

    new_price = apply_rounding(new_price, action.rounding)
    if new_price <= 0:
        raise ConfigurationError(f"Adjusted price for {action.variation} must stay positive")

    variations = tuple(
        replace(v, price=new_price) if v.label == action.variation else v
        for v in test.variations
    )
    details = {
        "variation": action.variation,
        "oldPrice": current,
        "newPrice": new_price,
        "adjustmentType": action.adjustment_type,
        "adjustmentValue": action.adjustment_value,
    }
    result = {"action": action.kind, "variation": action.variation, "oldPrice": current, "newPrice": new_price, "success": True}
    return test.evolve(variations=variations), result, details


def _stop_variation(action: StopVariation, test: PriceTestConfig, performance, now) -> ActionOutput:
    result = {"action": action.kind, "variation": action.variation, "reason": action.reason, "success": True}
    if test.is_stopped(action.variation):
        return test, result, None
    stopped = test.stopped_variations + (action.variation,)
    return test.evolve(stopped_variations=stopped), result, {"variation": action.variation, "reason": action.reason}


def _rebalance_traffic(action: RebalanceTraffic, test: PriceTestConfig, performance, now) -> ActionOutput:
    if action.strategy == "winner_takes_more":
        new_split = winner_takes_more_split(performance, action.winner_bonus, action.min_traffic)
    elif action.strategy == "equal_split":
        new_split = equal_split(len(test.variations))
    elif action.strategy == "custom":
        new_split = list(action.custom_split)
    else:
        raise UnknownRuleError(f"Unknown rebalancing strategy: {action.strategy}")

    if len(new_split) != len(test.variations):
        raise ConfigurationError("Traffic split must have one entry per variation")
    validate_split(new_split)

    old_split = list(test.traffic_split)
    details = {"strategy": action.strategy, "oldSplit": old_split, "newSplit": new_split}
    result = {"action": action.kind, "strategy": action.strategy, "oldSplit": old_split, "newSplit": new_split, "success": True}
    return test.evolve(traffic_split=tuple(new_split)), result, details


def _extend_test(action: ExtendTest, test: PriceTestConfig, performance, now) -> ActionOutput:
    current = test.duration or 7
    new_duration = current + action.extension_days
    details = {
        "extensionDays": action.extension_days,
        "oldDuration": current,
        "newDuration": new_duration,
        "reason": action.reason,
    }
    result = {
        "action": action.kind,
        "extensionDays": action.extension_days,
        "oldDuration": current,
        "newDuration": new_duration,
        "success": True,
    }
    return test.evolve(duration=new_duration, completed_at=None), result, details


_EXECUTORS: Dict[type, Callable[..., ActionOutput]] = {
    AdjustPrice: _adjust_price,
    StopVariation: _stop_variation,
    RebalanceTraffic: _rebalance_traffic,
    ExtendTest: _extend_test,
}


def execute_action(
    action: Action,
    test: PriceTestConfig,
    performance: Sequence[VariationPerformance],
    now: datetime,
) -> ActionOutput:
    executor = _EXECUTORS.get(type(action))
    if executor is None:
        raise UnknownRuleError(f"Unknown action: {type(action).__name__}")
    return executor(action, test, performance, now)


# Batch ----------------------------------------------------------------------

def process_rule(
    data: Dict[str, Any],
    test: PriceTestConfig,
    performance: Sequence[VariationPerformance],
    now: datetime,
) -> Tuple[PriceTestConfig, RuleResult, Optional[AuditLogEntry]]:
    rule = parse_rule(data)

    if isinstance(rule.action, AdjustPrice) and test.is_stopped(rule.action.variation):
        return test, RuleResult(rule.id, executed=False, reason=f"Variation {rule.action.variation} is stopped"), None

    if not evaluate_condition(rule.condition, performance, test, now):
        return test, RuleResult(rule.id, executed=False, reason="Condition not met"), None

    updated, action_result, details = execute_action(rule.action, test, performance, now)
    entry = AuditLogEntry(test.id, rule.action.kind, details, now) if details is not None else None
    return updated, RuleResult(rule.id, executed=True, action=action_result, timestamp=now), entry


def process_automation_rules(
    test: PriceTestConfig,
    performance: Sequence[VariationPerformance],
    now: datetime,
) -> AutomationOutcome:
    """
    Evaluate every rule of a running test, in order.

    Each rule sees the test as left by the rules before it. A failing rule
    is reported in its result and does not stop the rest of the batch.
    Returns an empty outcome when the test is not running or automation is
    off.
    """
    settings = test.automation_settings
    if test.status != STATUS_RUNNING or not settings.enabled:
        return AutomationOutcome(test=test)

    current = test
    results: List[RuleResult] = []
    logs: List[AuditLogEntry] = []
    for data in settings.rules:
        rule_id = data.get("id") if isinstance(data, dict) else None
        try:
            current, result, entry = process_rule(data, current, performance, now)
        except (PriceTestError, AttributeError, LookupError, TypeError, ValueError) as err:
            logger.warning("Automation rule %s failed for test %s: %s", rule_id, test.id, err)
            results.append(RuleResult(rule_id, executed=False, error=str(err)))
            continue
        results.append(result)
        if entry is not None:
            logs.append(entry)

    return AutomationOutcome(test=current, results=results, logs=logs)


# Rule management ------------------------------------------------------------

def new_rule_id() -> str:
    return f"rule_{uuid.uuid4().hex[:12]}"


def create_rule(settings: AutomationSettings, data: Dict[str, Any], now: datetime) -> Tuple[AutomationSettings, Dict[str, Any]]:
    rule = {**data, "id": new_rule_id(), "createdAt": now.isoformat()}
    parse_rule(rule)
    return AutomationSettings(enabled=settings.enabled, rules=settings.rules + (rule,)), rule


def update_rule(settings: AutomationSettings, data: Dict[str, Any], now: datetime) -> Tuple[AutomationSettings, Dict[str, Any]]:
    rule_id = data.get("id")
    rules = list(settings.rules)
    for index, existing in enumerate(rules):
        if existing.get("id") == rule_id:
            merged = {**existing, **data, "updatedAt": now.isoformat()}
            parse_rule(merged)
            rules[index] = merged
            return AutomationSettings(enabled=settings.enabled, rules=tuple(rules)), merged
    raise KeyError(f"Rule {rule_id} not found")


def delete_rule(settings: AutomationSettings, rule_id: str) -> AutomationSettings:
    return AutomationSettings(
        enabled=settings.enabled,
        rules=tuple(r for r in settings.rules if r.get("id") != rule_id),
    )


def set_enabled(settings: AutomationSettings, enabled: bool) -> AutomationSettings:
    return AutomationSettings(enabled=bool(enabled), rules=settings.rules)
