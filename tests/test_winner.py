import pytest

from pricetest.winner import (
    STATUS_NOT_SIGNIFICANT,
    STATUS_SIGNIFICANT,
    STATUS_WINNER,
    analyze_winner,
    classify,
    confirm_winner,
    goal_metric,
    heuristic_confidence,
)


@pytest.fixture
def large_sample(perf):
    return [
        perf("A", 20000, 1000, revenue=20000.0, is_control=True),
        perf("B", 20000, 1200, revenue=30000.0),
    ]


def test_heuristic_confidence_is_clamped():
    assert heuristic_confidence(0, 0, 0) == 60
    assert heuristic_confidence(10000, 100, 30) == pytest.approx(90)
    assert heuristic_confidence(1000000, 100, 30) == 95


def test_stopped_tests_use_looser_thresholds():
    assert classify(80, 2, 20, stopped=False) == STATUS_SIGNIFICANT
    assert classify(80, 2, 20, stopped=True) == STATUS_WINNER
    assert classify(65, 0.6, 12, stopped=True) == STATUS_SIGNIFICANT
    assert classify(65, 0.6, 12, stopped=False) == STATUS_NOT_SIGNIFICANT
    assert classify(95, 50, 29, stopped=False) == STATUS_SIGNIFICANT


def test_goal_metric(perf):
    p = perf("B", 200, 10, revenue=500.0, add_to_cart=40)
    assert goal_metric(p, "revenue_per_visitor") == pytest.approx(2.5)
    assert goal_metric(p, "conversion_rate") == pytest.approx(5.0)
    assert goal_metric(p, "average_order_value") == pytest.approx(50.0)
    assert goal_metric(p, "add_to_cart_rate") == pytest.approx(0.2)
    assert goal_metric(perf("C", 0, 0), "average_order_value") == 0.0


def test_clear_winner(make_test, large_sample, now):
    analysis = analyze_winner(large_sample, make_test(), now)

    assert analysis.winner.variation == "B"
    assert analysis.winner.status == STATUS_WINNER
    assert analysis.winner.improvement == pytest.approx(50.0)
    assert analysis.confidence_level == 95
    assert analysis.reason == "Winner: B shows 50.0% improvement with 95% confidence"
    assert analysis.total_visitors == 40000
    assert analysis.test_duration == 10
    assert analysis.revenue_impact == pytest.approx(400000.0)
    assert analysis.variations[0].status == STATUS_NOT_SIGNIFICANT
    assert analysis.variations[0].confidence == 81


def test_best_performer_without_winner(make_test, perf, now):
    performance = [
        perf("A", 100, 5, revenue=100.0, is_control=True),
        perf("B", 100, 10, revenue=150.0),
    ]
    analysis = analyze_winner(performance, make_test(), now)

    assert analysis.winner.variation == "B"
    assert not analysis.winner.is_winner
    assert analysis.reason == (
        "Best Performer: B shows 50.0% improvement with 60% confidence (not statistically significant)"
    )


def test_goal_changes_the_metric(make_test, perf, now):
    performance = [
        perf("A", 100, 10, revenue=100.0, is_control=True),
        perf("B", 100, 5, revenue=300.0),
    ]
    by_revenue = analyze_winner(performance, make_test(), now)
    by_rate = analyze_winner(performance, make_test(selected_goal="conversion_rate"), now)
    assert by_revenue.variations[1].improvement == pytest.approx(200.0)
    assert by_rate.variations[1].improvement == pytest.approx(-50.0)


def test_missing_control(make_test, perf, now):
    analysis = analyze_winner([perf("B", 100, 5)], make_test(), now)
    assert analysis.winner is None
    assert analysis.reason.startswith("No control variant found")


def test_confirm_winner(make_test, large_sample, now):
    analysis = confirm_winner(analyze_winner(large_sample, make_test(), now), "A")
    assert analysis.winner.variation == "A"
    assert analysis.confidence_level == 100
    assert analysis.manually_confirmed
    assert analysis.to_dict()["reason"] == "Manually selected: A chosen as winner"

    with pytest.raises(ValueError):
        confirm_winner(analysis, "Z")
