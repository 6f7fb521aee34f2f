from datetime import date, datetime, timedelta, timezone

import pytest

from pricetest.aggregation import (
    DEDUP_VISITOR_ID,
    aggregate,
    build_analytics,
    compute_kpis,
    daily_series,
    date_window,
)


def _by_label(performance):
    return {p.variation: p for p in performance}


def test_counts_distinct_paths_purchases_and_cart_adds(make_test, event):
    events = [
        event("page_view", "A", path="/products/hoodie"),
        event("page_view", "A", path="/products/hoodie"),
        event("page_view", "A", path="/products/hoodie?ref=x"),
        event("page_view", "B", path="/products/hoodie"),
        event("add_to_cart", "A"),
        event("purchase", "A", revenue_cents=2000),
        event("purchase", "B", revenue_cents=2500),
        event("purchase", "B", revenue_cents=None),
    ]
    perf = _by_label(aggregate(events, make_test()))

    assert perf["A"].visitors == 2
    assert perf["A"].conversions == 1
    assert perf["A"].add_to_cart == 1
    assert perf["A"].revenue == pytest.approx(20.0)
    assert perf["A"].conversion_rate == pytest.approx(50.0)
    assert perf["A"].revenue_per_visitor == pytest.approx(10.0)
    assert perf["A"].label == "Control"
    assert perf["B"].label == "Variant B"
    assert perf["B"].conversions == 2
    assert perf["B"].revenue == pytest.approx(25.0)


def test_dedup_by_visitor_id(make_test, event):
    events = [
        event("page_view", "A", path="/a", visitor_id="v1"),
        event("page_view", "A", path="/b", visitor_id="v1"),
        event("page_view", "A", path="/a", visitor_id="v2"),
    ]
    assert _by_label(aggregate(events, make_test()))["A"].visitors == 2
    assert _by_label(aggregate(events, make_test(), dedup_key=DEDUP_VISITOR_ID))["A"].visitors == 2
    assert _by_label(aggregate(events[:2], make_test(), dedup_key=DEDUP_VISITOR_ID))["A"].visitors == 1


def test_zero_visitors_gives_zero_rates(make_test, event):
    events = [event("purchase", "B", revenue_cents=1000)]
    perf = _by_label(aggregate(events, make_test()))
    assert perf["B"].visitors == 0
    assert perf["B"].conversion_rate == 0.0
    assert perf["B"].revenue_per_visitor == 0.0


def test_unknown_variation_events_are_ignored(make_test, event):
    perf = aggregate([event("page_view", "Z", path="/x")], make_test())
    assert [p.variation for p in perf] == ["A", "B"]
    assert all(p.visitors == 0 for p in perf)


def test_performance_keeps_config_order_and_split(make_test):
    perf = aggregate([], make_test(prices=(10.0, 12.0, 14.0), split=(20, 30, 50)))
    assert [(p.variation, p.traffic_percentage, p.price) for p in perf] == [
        ("A", 20, 10.0),
        ("B", 30, 12.0),
        ("C", 50, 14.0),
    ]


def test_daily_series_covers_seven_days_ending_today(make_test, event, now):
    test = make_test()
    events = [
        event("purchase", "A", ts=now, revenue_cents=1999),
        event("purchase", "A", ts=now - timedelta(days=6), revenue_cents=500),
        event("page_view", "B", ts=now - timedelta(days=1), path="/p"),
        # outside the window
        event("purchase", "A", ts=now - timedelta(days=7), revenue_cents=500),
    ]
    series = daily_series(events, test.variations, now.date())

    assert [row["date"] for row in series] == [
        (date(2024, 6, 15) - timedelta(days=offset)).isoformat() for offset in range(6, -1, -1)
    ]
    assert series[-1]["A_conversions"] == 1
    assert series[-1]["A_revenue"] == pytest.approx(19.99)
    assert series[0]["A_revenue"] == pytest.approx(5.0)
    assert series[-2]["B_visitors"] == 1
    assert sum(row["A_conversions"] for row in series) == 2


def test_daily_series_buckets_aware_timestamps_in_utc(make_test, event):
    test = make_test()
    plus_two = timezone(timedelta(hours=2))
    # 01:00 at +02:00 is still the previous UTC day
    ts = datetime(2024, 6, 15, 1, 0, tzinfo=plus_two)
    series = daily_series([event("purchase", "A", ts=ts)], test.variations, date(2024, 6, 15))
    assert series[-2]["A_conversions"] == 1
    assert series[-1]["A_conversions"] == 0


def test_kpis(perf):
    kpis = compute_kpis([perf("A", 100, 5, revenue=100.0, is_control=True), perf("B", 100, 15, revenue=300.0)])
    assert kpis["totalVisitors"] == 200
    assert kpis["totalConversions"] == 20
    assert kpis["totalRevenue"] == pytest.approx(400.0)
    assert kpis["conversionRate"] == pytest.approx(10.0)
    assert kpis["revenuePerVisitor"] == pytest.approx(2.0)


def test_kpis_without_visitors():
    kpis = compute_kpis([])
    assert kpis["conversionRate"] == 0.0
    assert kpis["revenuePerVisitor"] == 0.0


def test_date_window(now):
    assert date_window("30d", now) == (now - timedelta(days=30), now)
    assert date_window("bogus", now) == (now - timedelta(days=7), now)
    assert date_window(None, now)[0] == now - timedelta(days=7)


def test_build_analytics_payload(make_test, event, now):
    events = [event("page_view", "A", path=f"/p{i}", ts=now - timedelta(minutes=i)) for i in range(150)]
    analytics = build_analytics(make_test(), events, now)

    assert set(analytics) == {"variationPerformance", "kpis", "chartData", "statisticalAnalysis", "events"}
    assert analytics["variationPerformance"][0]["visitors"] == 150
    assert len(analytics["chartData"]) == 7
    assert len(analytics["events"]) == 100
    # most recent last
    assert analytics["events"][-1]["ts"] == now.isoformat()
    assert analytics["statisticalAnalysis"]["winner"] is None
