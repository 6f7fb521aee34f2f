"""
Deterministic visitor bucketing.

The hash must stay bit-compatible with assignments already handed out to
running experiments: 31-multiplier rolling hash over UTF-16 code units,
wrapped to a signed 32-bit integer after every step.
"""
from typing import Mapping, Optional

_MASK_32 = 0xFFFFFFFF
_SIGN_BIT = 0x80000000

LEGACY_VISITOR_COOKIE = "pt_vid"


def _utf16_code_units(value: str):
    data = value.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def rolling_hash(value: str) -> int:
    """
    Fold a string into a signed 32-bit integer (h = h * 31 + code unit).
    """
    h = 0
    for code in _utf16_code_units(value or ""):
        h = (h * 31 + code) & _MASK_32
    if h & _SIGN_BIT:
        h -= 1 << 32
    return h


def hash_to_unit(value: str) -> float:
    """
    Map an identifier to a value in [0, 1) with 1/10000 resolution.
    Same identifier, same value, on every process.
    """
    return (abs(rolling_hash(value)) % 10000) / 10000


def visitor_id_from_request(
    cookies: Mapping[str, str],
    headers: Mapping[str, str],
    cookie_name: str = "visitor_id",
) -> str:
    """
    Durable cookie value if the storefront already issued one, otherwise a
    fingerprint of client IP + user agent.
    """
    existing: Optional[str] = cookies.get(cookie_name) or cookies.get(LEGACY_VISITOR_COOKIE)
    if existing:
        return existing

    forwarded = headers.get("x-forwarded-for") or ""
    ip = forwarded.split(",")[0].strip() or headers.get("x-real-ip") or "unknown"
    user_agent = headers.get("user-agent") or "unknown"
    return f"visitor_{abs(rolling_hash(ip + user_agent))}"
