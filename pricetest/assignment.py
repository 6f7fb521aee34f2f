"""
Visitor -> variation assignment.

assign() is a pure function of the visitor id and the test's variations and
traffic split, so a visitor keeps seeing the same price for the lifetime of
the test.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence

from .domain import PriceTestConfig, Variation
from .exceptions import AssignmentError
from .hashing import hash_to_unit
from .targeting import RequestContext, eligible_tests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    test_id: str
    variation: str
    price: Optional[float]
    is_control: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasTest": True,
            "testId": self.test_id,
            "variation": self.variation,
            "price": self.price,
            "isControl": self.is_control,
        }


def assign(visitor_id: str, variations: Sequence[Variation], traffic_split: Sequence[float]) -> Variation:
    """
    Walk the cumulative traffic split and return the first variation whose
    bucket contains the visitor's hashed value.
    """
    if not variations or not traffic_split:
        raise AssignmentError("variations and traffic split must not be empty")
    if len(variations) != len(traffic_split):
        raise AssignmentError(
            f"traffic split has {len(traffic_split)} entries for {len(variations)} variations"
        )

    r = hash_to_unit(visitor_id)
    cumulative = 0.0
    for variation, percentage in zip(variations, traffic_split):
        cumulative += (percentage or 0) / 100
        if r <= cumulative:
            return variation

    # split summing slightly under 100 leaves a sliver at the top
    return variations[-1]


def assign_or_control(visitor_id: str, test: PriceTestConfig) -> Optional[Variation]:
    """
    Assignment for a live test. Malformed configs and stopped variations
    serve the control price instead of failing the storefront request.
    """
    try:
        variation = assign(visitor_id, test.variations, test.traffic_split)
    except AssignmentError as err:
        logger.warning("Assignment failed for test %s, serving control: %s", test.id, err)
        return test.control

    if test.is_stopped(variation.label) and test.control is not None:
        return test.control
    return variation


def resolve_assignment(
    visitor_id: str,
    tests: Iterable[PriceTestConfig],
    ctx: RequestContext,
    product_id: Optional[str] = None,
) -> Optional[Assignment]:
    """
    Pick the first test the visitor is eligible for and assign a variation.
    Returns None when no test applies; the caller answers hasTest=false.
    """
    candidates = eligible_tests(tests, ctx)
    if not candidates:
        return None

    test = candidates[0]
    variation = assign_or_control(visitor_id, test)
    if variation is None:
        # no control to fall back to: treat as no test
        return None

    return Assignment(
        test_id=test.id,
        variation=variation.label,
        price=variation.price_for(product_id),
        is_control=variation.is_control,
    )
