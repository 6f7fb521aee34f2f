# pricetest/config.py
import os

from dotenv import load_dotenv

# Load .env variables (DATABASE_URL, GEOIP_URL, LOG_LEVEL, ...)
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./pricetest.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Country lookup used when the storefront request carries no geo header
GEOIP_ENABLED = _env_bool("GEOIP_ENABLED", True)
GEOIP_URL = os.getenv("GEOIP_URL", "https://ipapi.co")
GEOIP_TIMEOUT = float(os.getenv("GEOIP_TIMEOUT", "0.8"))

# "path" keeps the legacy unique-visitor approximation, "visitor_id" dedups on real ids
VISITOR_DEDUP_KEY = os.getenv("VISITOR_DEDUP_KEY", "path")
VISITOR_COOKIE = os.getenv("VISITOR_COOKIE", "visitor_id")
VISITOR_COOKIE_MAX_AGE = int(os.getenv("VISITOR_COOKIE_MAX_AGE", str(60 * 60 * 24 * 365)))

SIGNIFICANCE_ALPHA = float(os.getenv("SIGNIFICANCE_ALPHA", "0.05"))
MIN_LIFT_PERCENT = float(os.getenv("MIN_LIFT_PERCENT", "5"))
POWER_TARGET = float(os.getenv("POWER_TARGET", "0.8"))

DEFAULT_DATE_RANGE = os.getenv("DEFAULT_DATE_RANGE", "7d")
