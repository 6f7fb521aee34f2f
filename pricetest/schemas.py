"""
Request bodies accepted by the API.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .domain import DEFAULT_GOAL, STATUS_DRAFT


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VariationIn(_Body):
    label: str = Field(..., min_length=1, max_length=1)
    price: float = 0
    is_control: bool = Field(False, alias="isControl")
    prices: Optional[Dict[str, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"label": self.label, "price": self.price, "isControl": self.is_control}
        if self.prices is not None:
            data["prices"] = self.prices
        return data


class PriceTestCreate(_Body):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    status: str = STATUS_DRAFT
    product_id: Optional[str] = Field(None, alias="productId")
    selected_products: Optional[List[Dict[str, Any]]] = Field(None, alias="selectedProducts")
    variations: List[VariationIn]
    traffic_split: List[float] = Field(..., alias="trafficSplit")
    goal: str = DEFAULT_GOAL
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    duration: Optional[float] = None
    duration_unit: Optional[str] = Field(None, alias="durationUnit")
    targeting: Optional[Dict[str, Any]] = None
    stopped_variations: Optional[List[str]] = Field(None, alias="stoppedVariations")
    automation_settings: Optional[Dict[str, Any]] = Field(None, alias="automationSettings")

    def primary_product_id(self) -> Optional[str]:
        if self.product_id:
            return str(self.product_id)
        if self.selected_products:
            first = self.selected_products[0].get("id")
            return str(first) if first else None
        return None


class StatusUpdate(_Body):
    status: str


class EventPayload(_Body):
    test_id: str = Field(..., alias="testId")
    variation: str
    product_id: Optional[str] = Field(None, alias="productId")
    variant_id: Optional[str] = Field(None, alias="variantId")
    qty: Optional[int] = None
    revenue_cents: Optional[int] = Field(None, alias="revenueCents")
    path: Optional[str] = None
    ts: Optional[datetime] = None
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    referrer: Optional[str] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")


class EventIn(_Body):
    type: str
    payload: EventPayload


class AutomationRequest(_Body):
    action: str
    test_id: str = Field(..., alias="testId")
    data: Dict[str, Any] = Field(default_factory=dict)


class StopVariationRequest(_Body):
    variation: str
    reason: Optional[str] = None


class WinnerConfirmation(_Body):
    variation: str
