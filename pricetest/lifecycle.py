"""
Test lifecycle: launch validation, status transitions and auto-completion.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from .domain import (
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_PAUSED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUSES,
    PriceTestConfig,
)
from .exceptions import ConfigurationError

MIN_VARIATIONS = 2
MAX_VARIATIONS = 5
VALID_LABELS = ("A", "B", "C", "D", "E")
SPLIT_TOLERANCE = 0.1

TERMINAL_STATUSES = (STATUS_STOPPED, STATUS_COMPLETED)

_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    STATUS_DRAFT: (STATUS_RUNNING,),
    STATUS_RUNNING: (STATUS_PAUSED, STATUS_STOPPED, STATUS_COMPLETED),
    STATUS_PAUSED: (STATUS_RUNNING, STATUS_STOPPED),
    STATUS_STOPPED: (),
    STATUS_COMPLETED: (),
}

_UNIT_DAYS = {"days": 1, "weeks": 7, "months": 30}


def validate_for_launch(test: PriceTestConfig) -> None:
    """
    Raise ConfigurationError unless the test can safely receive traffic.
    """
    variations = test.variations
    if not MIN_VARIATIONS <= len(variations) <= MAX_VARIATIONS:
        raise ConfigurationError(
            f"A test needs between {MIN_VARIATIONS} and {MAX_VARIATIONS} variations, got {len(variations)}"
        )

    labels = [v.label for v in variations]
    if len(set(labels)) != len(labels):
        raise ConfigurationError("Variation labels must be unique")
    bad = [label for label in labels if label not in VALID_LABELS]
    if bad:
        raise ConfigurationError(f"Invalid variation labels: {', '.join(bad)}")

    controls = [v for v in variations if v.is_control]
    if len(controls) != 1:
        raise ConfigurationError(f"Exactly one control variation is required, found {len(controls)}")

    if len(test.traffic_split) != len(variations):
        raise ConfigurationError(
            f"Traffic split has {len(test.traffic_split)} entries for {len(variations)} variations"
        )
    total = sum(test.traffic_split)
    if abs(total - 100) > SPLIT_TOLERANCE:
        raise ConfigurationError(f"Traffic split must sum to 100% (got {total:g})")
    if any(p < 0 for p in test.traffic_split):
        raise ConfigurationError("Traffic percentages cannot be negative")

    for v in variations:
        if v.price is None or v.price <= 0:
            raise ConfigurationError(f"Variation {v.label} needs a positive price")
        if v.prices and any(p <= 0 for p in v.prices.values()):
            raise ConfigurationError(f"Variation {v.label} has a non-positive product price")


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, ())


def transition(test: PriceTestConfig, status: str, now: datetime) -> PriceTestConfig:
    """Move a test to `status`, stamping started_at / completed_at."""
    if status not in STATUSES:
        raise ConfigurationError(f"Unknown status: {status}")
    if status == test.status:
        return test
    if not can_transition(test.status, status):
        raise ConfigurationError(f"Cannot move a {test.status} test to {status}")

    if status == STATUS_RUNNING:
        validate_for_launch(test)
        # resuming a paused test keeps the original start
        return test.evolve(status=status, started_at=test.started_at or now)
    if status == STATUS_COMPLETED:
        return test.evolve(status=status, completed_at=now)
    return test.evolve(status=status)


def end_time(test: PriceTestConfig) -> Optional[datetime]:
    start = test.started_at or test.created_at
    if start is None or not test.duration:
        return None
    days = _UNIT_DAYS.get(test.duration_unit or "days", 1)
    return start + timedelta(days=test.duration * days)


def is_expired(test: PriceTestConfig, now: datetime) -> bool:
    end = end_time(test)
    return end is not None and now >= end


def auto_complete(test: PriceTestConfig, now: datetime) -> PriceTestConfig:
    """Completed copy of a running test whose duration has elapsed."""
    if test.status == STATUS_RUNNING and is_expired(test, now):
        return test.evolve(status=STATUS_COMPLETED, completed_at=now)
    return test
