import logging
from typing import Mapping, Optional
from urllib.parse import quote

import requests

from . import config

logger = logging.getLogger(__name__)

_COUNTRY_HEADERS = ("cf-ipcountry", "x-country")


def country_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    for name in _COUNTRY_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def client_ip(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for") or ""
    return forwarded.split(",")[0].strip() or headers.get("x-real-ip") or ""


def lookup_country(ip: str) -> Optional[str]:
    """
    Ask the GeoIP service for the visitor's country.

    Never blocks assignment for long and never raises: a timeout, HTTP error
    or malformed body all mean "country unknown".
    """
    url = f"{config.GEOIP_URL}/{quote(ip or '', safe='')}/json/"
    try:
        resp = requests.get(url, timeout=config.GEOIP_TIMEOUT)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as err:
        logger.debug("GeoIP lookup failed for %r: %s", ip, err)
        return None

    country = data.get("country") if isinstance(data, dict) else None
    if isinstance(country, str) and country:
        return country
    return None


def resolve_country(headers: Mapping[str, str]) -> Optional[str]:
    country = country_from_headers(headers)
    if country:
        return country
    if not config.GEOIP_ENABLED:
        return None
    return lookup_country(client_ip(headers))
