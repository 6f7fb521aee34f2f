from datetime import timedelta

import pytest

from pricetest.automation import (
    AdjustPrice,
    PerformanceThreshold,
    RebalanceTraffic,
    TimeBased,
    apply_rounding,
    compare_values,
    create_rule,
    delete_rule,
    equal_split,
    evaluate_condition,
    parse_rule,
    parse_time_window,
    process_automation_rules,
    set_enabled,
    update_rule,
    winner_takes_more_split,
)
from pricetest.domain import STATUS_PAUSED, AutomationSettings
from pricetest.exceptions import ConfigurationError, UnknownRuleError


def _threshold(variation="B", metric="conversion_rate", operator="greater_than", value=5):
    return {
        "type": "performance_threshold",
        "variation": variation,
        "metric": metric,
        "operator": operator,
        "value": value,
    }


def _rule(rule_id, action, parameters, condition=None):
    return {
        "id": rule_id,
        "condition": condition or _threshold(),
        "action": action,
        "parameters": parameters,
    }


@pytest.fixture
def performance(perf):
    return [
        perf("A", 1000, 50, revenue=1000.0, is_control=True),
        perf("B", 1000, 80, revenue=2000.0, price=25.0),
    ]


class TestParsing:
    def test_parse_adjust_price_rule(self):
        rule = parse_rule(
            _rule("r1", "adjust_price", {"variation": "B", "adjustmentType": "percentage", "adjustmentValue": 10})
        )
        assert rule.id == "r1"
        assert isinstance(rule.condition, PerformanceThreshold)
        assert rule.action == AdjustPrice(variation="B", adjustment_type="percentage", adjustment_value=10.0)

    def test_parse_rebalance_reads_nested_parameters(self):
        rule = parse_rule(
            _rule(
                "r2",
                "rebalance_traffic",
                {"strategy": "winner_takes_more", "parameters": {"winnerBonus": 70, "minTraffic": 10}},
            )
        )
        assert rule.action == RebalanceTraffic(strategy="winner_takes_more", winner_bonus=70.0, min_traffic=10.0)

    def test_parse_time_based(self):
        condition = {"type": "time_based", "timeWindow": {"value": 3, "unit": "days"}, "operator": "after"}
        rule = parse_rule(_rule("r3", "extend_test", {"extensionDays": 7}, condition=condition))
        assert rule.condition == TimeBased(window_value=3.0, window_unit="days", operator="after")

    def test_unknown_condition_and_action(self):
        with pytest.raises(UnknownRuleError):
            parse_rule(_rule("r", "adjust_price", {"variation": "B"}, condition={"type": "moon_phase"}))
        with pytest.raises(UnknownRuleError):
            parse_rule(_rule("r", "launch_rocket", {}))


class TestHelpers:
    @pytest.mark.parametrize(
        "actual, operator, expected, result",
        [
            (6, "greater_than", 5, True),
            (5, "greater_than", 5, False),
            (4, "less_than", 5, True),
            (5.005, "equals", 5, True),
            (5.02, "equals", 5, False),
            (5, "greater_than_or_equal", 5, True),
            (5, "less_than_or_equal", 5, True),
            (5, "between", 5, False),
        ],
    )
    def test_compare_values(self, actual, operator, expected, result):
        assert compare_values(actual, operator, expected) is result

    def test_parse_time_window(self):
        assert parse_time_window(2, "hours") == timedelta(hours=2)
        assert parse_time_window(1, "weeks") == timedelta(days=7)
        assert parse_time_window(3, "fortnights") == timedelta(days=3)

    @pytest.mark.parametrize(
        "price, rounding, expected",
        [
            (27.5, "round", 28.0),
            (27.5, "round_to_dollar", 28.0),
            (27.2, "round_up", 28.0),
            (27.8, "round_down", 27.0),
            (27.556, "round_to_cent", 27.56),
            (27.3, None, 27.3),
        ],
    )
    def test_apply_rounding(self, price, rounding, expected):
        assert apply_rounding(price, rounding) == pytest.approx(expected)

    @pytest.mark.parametrize("rounding", ["round", "round_up", "round_down", "round_to_cent", "round_to_dollar"])
    def test_rounding_is_idempotent(self, rounding):
        once = apply_rounding(19.37, rounding)
        assert apply_rounding(once, rounding) == once

    def test_equal_split(self):
        assert sum(equal_split(3)) == pytest.approx(100)
        with pytest.raises(ConfigurationError):
            equal_split(0)

    def test_winner_takes_more(self, performance):
        assert winner_takes_more_split(performance, 70, 10) == [30, 70]
        assert winner_takes_more_split(performance, 70, 40) == [40, 70]


class TestConditions:
    def test_performance_threshold(self, make_test, performance, now):
        assert evaluate_condition(parse_rule(_rule("r", "extend_test", {})).condition, performance, make_test(), now)
        missing = PerformanceThreshold(variation="Z", metric="conversion_rate", operator="greater_than", value=0)
        assert not evaluate_condition(missing, performance, make_test(), now)

    def test_time_based(self, make_test, performance, now):
        test = make_test()
        assert evaluate_condition(TimeBased(3, "days", "after"), performance, test, now)
        assert not evaluate_condition(TimeBased(30, "days", "after"), performance, test, now)
        assert evaluate_condition(TimeBased(30, "days", "before"), performance, test, now)

    def test_statistical_significance(self, make_test, performance, now):
        rule = parse_rule(
            _rule(
                "r",
                "extend_test",
                {},
                condition={"type": "statistical_significance", "variation": "B", "minConfidence": 99, "minLift": 50},
            )
        )
        assert evaluate_condition(rule.condition, performance, make_test(), now)

    def test_traffic_volume(self, make_test, performance, now):
        condition = parse_rule(
            _rule("r", "extend_test", {}, condition={"type": "traffic_volume", "variation": "B", "minVisitors": 1000})
        ).condition
        assert evaluate_condition(condition, performance, make_test(), now)


class TestProcessing:
    def test_adjust_price_with_rounding(self, make_test, performance, now):
        rule = _rule(
            "r1",
            "adjust_price",
            {"variation": "B", "adjustmentType": "percentage", "adjustmentValue": 10, "rounding": "round"},
        )
        outcome = process_automation_rules(make_test(rules=[rule]), performance, now)

        assert outcome.test.variation("B").price == 28.0
        assert outcome.test.variation("A").price == 20.0
        assert outcome.results[0].executed
        assert outcome.results[0].action["newPrice"] == 28.0
        assert outcome.logs[0].action == "adjust_price"
        assert outcome.logs[0].details["oldPrice"] == 25.0
        assert outcome.changed

    def test_adjust_price_must_stay_positive(self, make_test, performance, now):
        rule = _rule("r1", "adjust_price", {"variation": "B", "adjustmentType": "fixed_amount", "adjustmentValue": -30})
        outcome = process_automation_rules(make_test(rules=[rule]), performance, now)
        assert not outcome.results[0].executed
        assert outcome.results[0].error
        assert outcome.test.variation("B").price == 25.0

    def test_adjust_price_skips_stopped_variation(self, make_test, performance, now):
        rule = _rule("r1", "adjust_price", {"variation": "B", "adjustmentType": "set_to", "adjustmentValue": 30})
        outcome = process_automation_rules(make_test(rules=[rule], stopped_variations=("B",)), performance, now)
        assert outcome.results[0].reason == "Variation B is stopped"
        assert outcome.test.variation("B").price == 25.0

    def test_condition_not_met(self, make_test, performance, now):
        rule = _rule("r1", "stop_variation", {"variation": "B"}, condition=_threshold(value=50))
        outcome = process_automation_rules(make_test(rules=[rule]), performance, now)
        assert outcome.results[0].reason == "Condition not met"
        assert not outcome.changed

    def test_failing_rule_does_not_block_others(self, make_test, performance, now):
        rules = [
            _rule("bad", "launch_rocket", {}),
            _rule("good", "stop_variation", {"variation": "B", "reason": "underpriced"}),
        ]
        outcome = process_automation_rules(make_test(rules=rules), performance, now)

        assert outcome.results[0].rule_id == "bad"
        assert "Unknown action" in outcome.results[0].error
        assert outcome.results[1].executed
        assert outcome.test.stopped_variations == ("B",)

    def test_stop_variation_is_idempotent(self, make_test, performance, now):
        rule = _rule("r1", "stop_variation", {"variation": "B"})
        first = process_automation_rules(make_test(rules=[rule]), performance, now)
        second = process_automation_rules(first.test, performance, now)
        assert second.test.stopped_variations == ("B",)
        assert second.results[0].executed
        assert second.logs == []

    def test_rebalance_strategies(self, make_test, performance, now):
        rules = [
            _rule("r1", "rebalance_traffic", {"strategy": "custom", "parameters": {"customSplit": [20, 80]}}),
        ]
        outcome = process_automation_rules(make_test(rules=rules), performance, now)
        assert outcome.test.traffic_split == (20.0, 80.0)

        bad = [_rule("r1", "rebalance_traffic", {"strategy": "custom", "parameters": {"customSplit": [20, 70]}})]
        outcome = process_automation_rules(make_test(rules=bad), performance, now)
        assert outcome.results[0].error
        assert outcome.test.traffic_split == (50, 50)

    def test_rules_see_earlier_changes(self, make_test, performance, now):
        rules = [
            _rule("r1", "adjust_price", {"variation": "B", "adjustmentType": "fixed_amount", "adjustmentValue": 5}),
            _rule("r2", "adjust_price", {"variation": "B", "adjustmentType": "fixed_amount", "adjustmentValue": 5}),
        ]
        outcome = process_automation_rules(make_test(rules=rules), performance, now)
        assert outcome.test.variation("B").price == 35.0
        assert [log.details["oldPrice"] for log in outcome.logs] == [25.0, 30.0]

    def test_extend_test(self, make_test, performance, now):
        rule = _rule("r1", "extend_test", {"extensionDays": 7, "reason": "more data"})
        outcome = process_automation_rules(make_test(rules=[rule]), performance, now)
        assert outcome.test.duration == 21
        assert outcome.logs[0].details["oldDuration"] == 14

    def test_not_running_or_disabled_is_a_no_op(self, make_test, performance, now):
        rule = _rule("r1", "stop_variation", {"variation": "B"})
        paused = process_automation_rules(make_test(rules=[rule], status=STATUS_PAUSED), performance, now)
        disabled = process_automation_rules(make_test(rules=[rule], automation=False), performance, now)
        for outcome in (paused, disabled):
            assert outcome.results == []
            assert outcome.test.stopped_variations == ()


class TestRuleManagement:
    def test_create_update_delete(self, now):
        settings = AutomationSettings(enabled=True)
        settings, rule = create_rule(settings, _rule(None, "stop_variation", {"variation": "B"}), now)
        assert rule["id"].startswith("rule_")
        assert rule["createdAt"] == now.isoformat()

        settings, updated = update_rule(settings, {"id": rule["id"], "parameters": {"variation": "A"}}, now)
        assert updated["parameters"] == {"variation": "A"}
        assert settings.rules[0]["updatedAt"] == now.isoformat()

        settings = delete_rule(settings, rule["id"])
        assert settings.rules == ()

    def test_create_rejects_unknown_action(self, now):
        with pytest.raises(UnknownRuleError):
            create_rule(AutomationSettings(), _rule(None, "launch_rocket", {}), now)

    def test_update_missing_rule(self, now):
        with pytest.raises(KeyError):
            update_rule(AutomationSettings(), {"id": "nope"}, now)

    def test_set_enabled(self):
        assert set_enabled(AutomationSettings(), True).enabled
