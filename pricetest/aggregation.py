"""
Fold a test's raw event log into per-variation performance.

Everything here is a pure function over an event slice handed in by the
caller; nothing is cached between requests.
"""
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .domain import (
    EVENT_ADD_TO_CART,
    EVENT_PAGE_VIEW,
    EVENT_PURCHASE,
    PriceTestConfig,
    TrackedEvent,
    Variation,
    VariationPerformance,
)
from .stats import calculate_statistical_significance

DEDUP_PATH = "path"
DEDUP_VISITOR_ID = "visitor_id"

DATE_RANGES = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}

SERIES_DAYS = 7
RECENT_EVENTS = 100


def _display_label(variation: Variation) -> str:
    return "Control" if variation.is_control else f"Variant {variation.label}"


def _dedup_value(event: TrackedEvent, dedup_key: str) -> Optional[str]:
    if dedup_key == DEDUP_VISITOR_ID:
        return event.visitor_id
    # legacy behaviour: request path stands in for the visitor
    return event.path


def aggregate(
    events: Sequence[TrackedEvent],
    test: PriceTestConfig,
    dedup_key: str = DEDUP_PATH,
) -> List[VariationPerformance]:
    """
    One VariationPerformance per configured variation, in config order.

    visitors counts distinct dedup keys among page views (path by default,
    which is only an approximation of unique visitors). Rates are 0 when a
    variation has no visitors.
    """
    seen: Dict[str, Set[Optional[str]]] = {v.label: set() for v in test.variations}
    conversions: Dict[str, int] = defaultdict(int)
    add_to_cart: Dict[str, int] = defaultdict(int)
    revenue_cents: Dict[str, int] = defaultdict(int)

    for event in events:
        if event.variation not in seen:
            continue
        if event.type == EVENT_PAGE_VIEW:
            seen[event.variation].add(_dedup_value(event, dedup_key))
        elif event.type == EVENT_PURCHASE:
            conversions[event.variation] += 1
            revenue_cents[event.variation] += event.revenue_cents or 0
        elif event.type == EVENT_ADD_TO_CART:
            add_to_cart[event.variation] += 1

    performance = []
    for index, variation in enumerate(test.variations):
        label = variation.label
        visitors = len(seen[label])
        revenue = revenue_cents[label] / 100
        performance.append(
            VariationPerformance(
                variation=label,
                label=_display_label(variation),
                price=variation.price,
                prices=variation.prices,
                traffic_percentage=test.traffic_split[index] if index < len(test.traffic_split) else 0,
                visitors=visitors,
                conversions=conversions[label],
                add_to_cart=add_to_cart[label],
                conversion_rate=(conversions[label] / visitors) * 100 if visitors > 0 else 0.0,
                revenue=revenue,
                revenue_per_visitor=revenue / visitors if visitors > 0 else 0.0,
                is_control=variation.is_control,
            )
        )
    return performance


def _utc_date(ts: datetime) -> date:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.date()


def daily_series(
    events: Sequence[TrackedEvent],
    variations: Sequence[Variation],
    today: date,
    days: int = SERIES_DAYS,
) -> List[Dict[str, Any]]:
    """
    Per-day conversions, revenue and page views for each variation over the
    `days` UTC dates ending at `today`. Events outside the window are dropped.
    """
    labels = [v.label for v in variations]
    buckets: Dict[str, Dict[str, Any]] = {}
    for offset in range(days - 1, -1, -1):
        key = (today - timedelta(days=offset)).isoformat()
        row: Dict[str, Any] = {"date": key}
        for label in labels:
            row[f"{label}_conversions"] = 0
            row[f"{label}_revenue"] = 0.0
            row[f"{label}_visitors"] = 0
        buckets[key] = row

    for event in events:
        row = buckets.get(_utc_date(event.ts).isoformat())
        if row is None or event.variation not in labels:
            continue
        if event.type == EVENT_PURCHASE:
            row[f"{event.variation}_conversions"] += 1
            row[f"{event.variation}_revenue"] += (event.revenue_cents or 0) / 100
        elif event.type == EVENT_PAGE_VIEW:
            row[f"{event.variation}_visitors"] += 1

    return list(buckets.values())


def compute_kpis(performance: Sequence[VariationPerformance]) -> Dict[str, float]:
    total_visitors = sum(p.visitors for p in performance)
    total_conversions = sum(p.conversions for p in performance)
    total_revenue = sum(p.revenue for p in performance)
    return {
        "totalVisitors": total_visitors,
        "totalConversions": total_conversions,
        "totalRevenue": total_revenue,
        "revenuePerVisitor": total_revenue / total_visitors if total_visitors > 0 else 0.0,
        "conversionRate": (total_conversions / total_visitors) * 100 if total_visitors > 0 else 0.0,
    }


def date_window(range_key: Optional[str], now: datetime) -> Tuple[datetime, datetime]:
    """(start, end) for a dateRange key such as "30d"; unknown keys mean 7 days."""
    days = DATE_RANGES.get(range_key or "", 7)
    return now - timedelta(days=days), now


def build_analytics(
    test: PriceTestConfig,
    events: Sequence[TrackedEvent],
    now: datetime,
    dedup_key: str = DEDUP_PATH,
) -> Dict[str, Any]:
    """
    Analytics query payload: performance, KPIs, the 7-day chart series, the
    significance verdict and the most recent events.
    """
    performance = aggregate(events, test, dedup_key=dedup_key)
    control = test.control
    significance = calculate_statistical_significance(performance, control.label if control else None)

    ordered = sorted(events, key=lambda e: e.ts)
    return {
        "variationPerformance": [p.to_dict() for p in performance],
        "kpis": compute_kpis(performance),
        "chartData": daily_series(events, test.variations, _utc_date(now)),
        "statisticalAnalysis": significance.to_dict(),
        "events": [e.to_dict() for e in ordered[-RECENT_EVENTS:]],
    }
