"""
Audience filter: decides whether a storefront request may enter a test.

All three predicates (device, traffic source, country) must match. The
heuristics are deliberately loose substring checks carried over from the
storefront script; existing targeting depends on them.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .domain import PriceTestConfig

DEVICE_MOBILE = "mobile"
DEVICE_TABLET = "tablet"
DEVICE_DESKTOP = "desktop"

_MOBILE_RE = re.compile(r"mobile|iphone|android")
_TABLET_RE = re.compile(r"ipad|tablet")

_SEARCH_ENGINES = ("google", "bing", "yahoo")
_SOCIAL_RE = re.compile(r"(facebook|instagram|twitter|t\.co|linkedin|pinterest|tiktok)")
# referrers that are never counted as a plain referral
_KNOWN_DOMAINS_RE = re.compile(r"(google|bing|yahoo|facebook|instagram|twitter|linkedin)")


@dataclass(frozen=True)
class RequestContext:
    """What the storefront request tells us about the visitor."""

    user_agent: str = ""
    referrer: str = ""
    query: str = ""
    country: Optional[str] = None


def classify_device(user_agent: str) -> str:
    ua = (user_agent or "").lower()
    if _MOBILE_RE.search(ua):
        return DEVICE_MOBILE
    if _TABLET_RE.search(ua):
        return DEVICE_TABLET
    return DEVICE_DESKTOP


def matches_device(device_type: Optional[str], user_agent: str) -> bool:
    if not device_type or device_type == "all":
        return True
    if device_type not in (DEVICE_MOBILE, DEVICE_TABLET, DEVICE_DESKTOP):
        return True
    return classify_device(user_agent) == device_type


def _matches_source(source: str, referrer: str, query: str) -> bool:
    if source == "organic":
        return any(engine in referrer for engine in _SEARCH_ENGINES)
    if source == "paid_search":
        return "utm_medium=cpc" in query or "gclid=" in referrer or "gclid=" in query
    if source == "social":
        return bool(_SOCIAL_RE.search(referrer))
    if source == "email":
        return "utm_medium=email" in query
    if source == "referral":
        return bool(referrer) and not _KNOWN_DOMAINS_RE.search(referrer)
    # unknown tags never exclude anyone
    return True


def classify_traffic_sources(referrer: str, query: str = "") -> List[str]:
    """All source tags the request would satisfy."""
    referrer = (referrer or "").lower()
    query = (query or "").lower()
    tags = ("organic", "paid_search", "social", "email", "referral")
    return [tag for tag in tags if _matches_source(tag, referrer, query)]


def matches_traffic_source(sources: Sequence[str], referrer: str, query: str = "") -> bool:
    if not sources:
        return True
    referrer = (referrer or "").lower()
    query = (query or "").lower()
    return any(_matches_source(source, referrer, query) for source in sources)


def matches_country(countries: Sequence[str], country: Optional[str]) -> bool:
    """
    First-letter prefix match of each target against the resolved country.
    An unresolved country never excludes the visitor.
    """
    if not countries:
        return True
    if not country:
        return True
    resolved = country.lower()
    return any(target and resolved.startswith(target[0].lower()) for target in countries)


def is_eligible(test: PriceTestConfig, ctx: RequestContext) -> bool:
    targeting = test.targeting
    return (
        matches_device(targeting.device_type, ctx.user_agent)
        and matches_traffic_source(targeting.traffic_sources, ctx.referrer, ctx.query)
        and matches_country(targeting.countries, ctx.country)
    )


def eligible_tests(tests: Iterable[PriceTestConfig], ctx: RequestContext) -> List[PriceTestConfig]:
    return [test for test in tests if is_eligible(test, ctx)]
