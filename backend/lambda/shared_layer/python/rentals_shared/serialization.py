"""rentals_shared.serialization — Timestamp helpers and structured log lines."""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _iso_z(value: dt.datetime) -> str:
    """Format an aware (or naive UTC) datetime as ISO 8601 with Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).strftime(_ISO_FORMAT)


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return _iso_z(_utcnow())


def _parse_iso8601(raw: Any) -> Optional[dt.datetime]:
    """Parse an ISO 8601 timestamp (Z or offset); None when unparseable."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = dt.datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _parse_day(raw: Any) -> Optional[dt.date]:
    """Parse a YYYY-MM-DD day, also accepting a full timestamp."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        return dt.date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
