# pricetest/domain.py
"""
Immutable value types passed through the pure core.

The ORM rows in models.py are converted into these snapshots before any
assignment, aggregation or statistics code sees them, so the core never
touches a session or mutates shared state.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

STATUS_DRAFT = "Draft"
STATUS_RUNNING = "Running"
STATUS_PAUSED = "Paused"
STATUS_STOPPED = "Stopped"
STATUS_COMPLETED = "Completed"

STATUSES = (STATUS_DRAFT, STATUS_RUNNING, STATUS_PAUSED, STATUS_STOPPED, STATUS_COMPLETED)

EVENT_PAGE_VIEW = "page_view"
EVENT_ADD_TO_CART = "add_to_cart"
EVENT_PURCHASE = "purchase"

EVENT_TYPES = (EVENT_PAGE_VIEW, EVENT_ADD_TO_CART, EVENT_PURCHASE)

GOALS = ("revenue_per_visitor", "conversion_rate", "average_order_value", "add_to_cart_rate")
DEFAULT_GOAL = "revenue_per_visitor"


@dataclass(frozen=True)
class Variation:
    label: str
    price: float
    is_control: bool = False
    # product id -> price, when a test spans several products
    prices: Optional[Dict[str, float]] = None

    def price_for(self, product_id: Optional[str] = None) -> float:
        if product_id and self.prices and product_id in self.prices:
            return float(self.prices[product_id])
        return self.price

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variation":
        prices = data.get("prices")
        return cls(
            label=str(data.get("label", "")),
            price=float(data.get("price") or 0),
            is_control=bool(data.get("isControl", False)),
            prices={str(k): float(v) for k, v in prices.items()} if isinstance(prices, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"label": self.label, "price": self.price, "isControl": self.is_control}
        if self.prices is not None:
            data["prices"] = dict(self.prices)
        return data


@dataclass(frozen=True)
class Targeting:
    device_type: str = "all"
    visitor_type: str = "all"
    traffic_sources: Tuple[str, ...] = ()
    countries: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Targeting":
        data = data or {}
        return cls(
            device_type=data.get("deviceType") or "all",
            visitor_type=data.get("visitorType") or "all",
            traffic_sources=tuple(data.get("trafficSources") or ()),
            countries=tuple(data.get("countries") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceType": self.device_type,
            "visitorType": self.visitor_type,
            "trafficSources": list(self.traffic_sources),
            "countries": list(self.countries),
        }


@dataclass(frozen=True)
class AutomationSettings:
    enabled: bool = False
    # raw rule payloads; automation.parse_rule turns them into typed rules
    rules: Tuple[Dict[str, Any], ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AutomationSettings":
        data = data or {}
        return cls(enabled=bool(data.get("enabled", False)), rules=tuple(data.get("rules") or ()))

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "rules": [dict(r) for r in self.rules]}


@dataclass(frozen=True)
class PriceTestConfig:
    """Read-only snapshot of a pricing experiment."""

    id: str
    name: str = ""
    status: str = STATUS_DRAFT
    variations: Tuple[Variation, ...] = ()
    traffic_split: Tuple[float, ...] = ()
    targeting: Targeting = field(default_factory=Targeting)
    selected_goal: str = DEFAULT_GOAL
    stopped_variations: Tuple[str, ...] = ()
    automation_settings: AutomationSettings = field(default_factory=AutomationSettings)
    duration: Optional[float] = None
    duration_unit: Optional[str] = None
    product_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def control(self) -> Optional[Variation]:
        for variation in self.variations:
            if variation.is_control:
                return variation
        return None

    def variation(self, label: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.label == label:
                return variation
        return None

    def is_stopped(self, label: str) -> bool:
        return label in self.stopped_variations

    def evolve(self, **changes: Any) -> "PriceTestConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class TrackedEvent:
    """One immutable visitor action, as stored by the event collaborator."""

    type: str
    test_id: str
    variation: str
    ts: datetime
    revenue_cents: Optional[int] = None
    path: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    qty: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "testId": self.test_id,
            "variation": self.variation,
            "ts": self.ts.isoformat(),
            "revenueCents": self.revenue_cents,
            "path": self.path,
            "visitorId": self.visitor_id,
            "sessionId": self.session_id,
            "productId": self.product_id,
            "variantId": self.variant_id,
            "qty": self.qty,
        }


@dataclass(frozen=True)
class VariationPerformance:
    """Per-variation rollup derived from events; never stored."""

    variation: str
    label: str
    price: float
    traffic_percentage: float
    visitors: int = 0
    conversions: int = 0
    add_to_cart: int = 0
    conversion_rate: float = 0.0
    revenue: float = 0.0
    revenue_per_visitor: float = 0.0
    is_control: bool = False
    prices: Optional[Dict[str, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variation": self.variation,
            "label": self.label,
            "price": self.price,
            "prices": self.prices,
            "trafficPercentage": self.traffic_percentage,
            "visitors": self.visitors,
            "conversions": self.conversions,
            "addToCart": self.add_to_cart,
            "conversionRate": self.conversion_rate,
            "revenue": self.revenue,
            "revenuePerVisitor": self.revenue_per_visitor,
            "isControl": self.is_control,
        }


@dataclass(frozen=True)
class ConfidenceInterval:
    lower: float
    upper: float
    difference: float

    def to_dict(self) -> Dict[str, float]:
        return {"lower": self.lower, "upper": self.upper, "difference": self.difference}


@dataclass(frozen=True)
class StatisticalResult:
    """Comparison of one challenger variation against control."""

    variation: str
    lift: float
    confidence: float
    p_value: float
    is_significant: bool
    method: str
    confidence_interval: Optional[ConfidenceInterval] = None
    sample_size: int = 0
    power: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variation": self.variation,
            "lift": round(self.lift, 1),
            "confidence": round(self.confidence, 1),
            "pValue": round(self.p_value, 4),
            "isSignificant": self.is_significant,
            "method": self.method,
            "confidenceInterval": self.confidence_interval.to_dict() if self.confidence_interval else None,
            "sampleSize": self.sample_size,
            "power": self.power,
        }

