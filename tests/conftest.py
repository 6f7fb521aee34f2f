import os
import tempfile
from datetime import datetime, timedelta

import pytest

# Point the app at a throwaway database before pricetest.db is imported
_DB_DIR = tempfile.mkdtemp(prefix="pricetest-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["GEOIP_ENABLED"] = "false"

from pricetest.domain import (  # noqa: E402
    STATUS_RUNNING,
    AutomationSettings,
    PriceTestConfig,
    Targeting,
    TrackedEvent,
    Variation,
    VariationPerformance,
)

NOW = datetime(2024, 6, 15, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_test():
    def _make(
        prices=(20.0, 25.0),
        split=(50, 50),
        status=STATUS_RUNNING,
        targeting=None,
        rules=(),
        automation=True,
        **changes,
    ):
        labels = "ABCDE"
        variations = tuple(
            Variation(label=labels[i], price=price, is_control=(i == 0)) for i, price in enumerate(prices)
        )
        base = PriceTestConfig(
            id="test_1",
            name="Hoodie price test",
            status=status,
            variations=variations,
            traffic_split=tuple(split),
            targeting=targeting or Targeting(),
            automation_settings=AutomationSettings(enabled=automation, rules=tuple(rules)),
            duration=14,
            duration_unit="days",
            created_at=NOW - timedelta(days=10),
            started_at=NOW - timedelta(days=10),
        )
        return base.evolve(**changes) if changes else base

    return _make


@pytest.fixture
def perf():
    def _perf(variation, visitors, conversions, revenue=0.0, add_to_cart=0, is_control=False, price=20.0):
        return VariationPerformance(
            variation=variation,
            label="Control" if is_control else f"Variant {variation}",
            price=price,
            traffic_percentage=50,
            visitors=visitors,
            conversions=conversions,
            add_to_cart=add_to_cart,
            conversion_rate=(conversions / visitors) * 100 if visitors else 0.0,
            revenue=revenue,
            revenue_per_visitor=revenue / visitors if visitors else 0.0,
            is_control=is_control,
        )

    return _perf


@pytest.fixture
def event():
    def _event(type_, variation, ts=NOW, path=None, visitor_id=None, revenue_cents=None):
        return TrackedEvent(
            type=type_,
            test_id="test_1",
            variation=variation,
            ts=ts,
            path=path,
            visitor_id=visitor_id,
            revenue_cents=revenue_cents,
        )

    return _event
