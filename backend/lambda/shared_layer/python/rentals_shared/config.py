"""rentals_shared.config — Environment variables and constants.

Values are read once at import time; callers (and tests) may override the
module attributes before first use.
"""

from __future__ import annotations

import logging
import os


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", name, raw)
        return default


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

CONTENT_TABLE: str = os.environ.get("CONTENT_TABLE", "")
DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-west-2")

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

ADMIN_JWT_SECRET: str = os.environ.get("ADMIN_JWT_SECRET", "")
ADMIN_JWT_AUDIENCE: str = os.environ.get("ADMIN_JWT_AUDIENCE", "")
INTERNAL_API_KEY: str = os.environ.get("INTERNAL_API_KEY", "")
INTERNAL_API_KEY_PREVIOUS: str = os.environ.get("INTERNAL_API_KEY_PREVIOUS", "")
INTERNAL_API_KEYS: tuple[str, ...] = _normalize_api_keys(
    os.environ.get("INTERNAL_API_KEYS", ""),
    INTERNAL_API_KEY,
    INTERNAL_API_KEY_PREVIOUS,
)

# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

STRIPE_SECRET_KEY: str = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_API_BASE: str = os.environ.get("STRIPE_API_BASE", "https://api.stripe.com")
STRIPE_TIMEOUT_SECONDS: float = float(os.environ.get("STRIPE_TIMEOUT_SECONDS", "10"))

# ---------------------------------------------------------------------------
# HTTP / content defaults
# ---------------------------------------------------------------------------

CORS_ORIGIN: str = os.environ.get("CORS_ORIGIN", "https://www.example-rentals.com")
DEFAULT_PAGE_LIMIT: int = _int_env("DEFAULT_PAGE_LIMIT", 50)
RENTAL_DATE_INDEX_TTL_DAYS: int = _int_env("RENTAL_DATE_INDEX_TTL_DAYS", 90)
RENTAL_DATE_RANGE_MAX_DAYS: int = _int_env("RENTAL_DATE_RANGE_MAX_DAYS", 90)
INVOICE_TAX_RATE: float = float(os.environ.get("INVOICE_TAX_RATE", "8.25"))


def store_configured() -> bool:
    """True when a backing table name is configured."""
    return bool(CONTENT_TABLE)
