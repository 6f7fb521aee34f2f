# pricetest/models.py
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .db import Base
from .domain import (
    DEFAULT_GOAL,
    STATUS_DRAFT,
    AutomationSettings,
    PriceTestConfig,
    Targeting,
    TrackedEvent,
    Variation,
)


def _new_id() -> str:
    return uuid.uuid4().hex


class PriceTest(Base):
    __tablename__ = "tests"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_DRAFT, index=True)
    product_id = Column(String, nullable=True, index=True)
    selected_products = Column(JSON, nullable=True)

    # [{"label": "A", "price": 19.99, "isControl": true, "prices": {...}}, ...]
    variations = Column(JSON, nullable=False, default=list)
    traffic_split = Column(JSON, nullable=False, default=list)
    targeting = Column(JSON, nullable=True)
    goal = Column(String, nullable=False, default=DEFAULT_GOAL)
    stopped_variations = Column(JSON, nullable=True)
    automation_settings = Column(JSON, nullable=True)

    description = Column(Text, nullable=True)
    hypothesis = Column(Text, nullable=True)
    duration = Column(Float, nullable=True)
    duration_unit = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # bumped on every write; a stale writer gets StaleDataError on flush
    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    events = relationship("Event", back_populates="test", cascade="all, delete-orphan")
    automation_logs = relationship("AutomationLog", back_populates="test", cascade="all, delete-orphan")

    def to_config(self) -> PriceTestConfig:
        return PriceTestConfig(
            id=self.id,
            name=self.name or "",
            status=self.status or STATUS_DRAFT,
            variations=tuple(Variation.from_dict(v) for v in self.variations or ()),
            traffic_split=tuple(float(p) for p in self.traffic_split or ()),
            targeting=Targeting.from_dict(self.targeting),
            selected_goal=self.goal or DEFAULT_GOAL,
            stopped_variations=tuple(self.stopped_variations or ()),
            automation_settings=AutomationSettings.from_dict(self.automation_settings),
            duration=self.duration,
            duration_unit=self.duration_unit,
            product_id=self.product_id,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            version=self.version or 0,
        )

    def apply_config(self, test: PriceTestConfig) -> None:
        """Copy the mutable parts of a snapshot back onto the row."""
        self.status = test.status
        self.variations = [v.to_dict() for v in test.variations]
        self.traffic_split = list(test.traffic_split)
        self.targeting = test.targeting.to_dict()
        self.goal = test.selected_goal
        self.stopped_variations = list(test.stopped_variations)
        self.automation_settings = test.automation_settings.to_dict()
        self.duration = test.duration
        self.duration_unit = test.duration_unit
        self.started_at = test.started_at
        self.completed_at = test.completed_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "productId": self.product_id,
            "selectedProducts": self.selected_products,
            "variations": self.variations or [],
            "trafficSplit": self.traffic_split or [],
            "targeting": self.targeting,
            "goal": self.goal,
            "stoppedVariations": self.stopped_variations or [],
            "automationSettings": self.automation_settings or {"enabled": False, "rules": []},
            "description": self.description,
            "hypothesis": self.hypothesis,
            "duration": self.duration,
            "durationUnit": self.duration_unit,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "version": self.version,
        }


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(String, ForeignKey("tests.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # page_view, add_to_cart, purchase
    variation = Column(String, nullable=False)
    ts = Column(DateTime, default=datetime.utcnow, index=True)

    product_id = Column(String, nullable=True)
    variant_id = Column(String, nullable=True)
    qty = Column(Integer, nullable=True)
    revenue_cents = Column(Integer, nullable=True)  # purchase only
    path = Column(String, nullable=True)

    visitor_id = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    referrer = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    test = relationship("PriceTest", back_populates="events")

    def to_tracked(self) -> TrackedEvent:
        return TrackedEvent(
            type=self.type,
            test_id=self.test_id,
            variation=self.variation,
            ts=self.ts,
            revenue_cents=self.revenue_cents,
            path=self.path,
            visitor_id=self.visitor_id,
            session_id=self.session_id,
            product_id=self.product_id,
            variant_id=self.variant_id,
            qty=self.qty,
        )


class AutomationLog(Base):
    __tablename__ = "automation_logs"

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(String, ForeignKey("tests.id"), nullable=False, index=True)
    action = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

    test = relationship("PriceTest", back_populates="automation_logs")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "details": self.details or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
