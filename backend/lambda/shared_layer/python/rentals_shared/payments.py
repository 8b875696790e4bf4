"""rentals_shared.payments — Read-only payment provider lookups.

Only payment intents are read, to show deposit state next to a rental.
"""

from __future__ import annotations

import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, Optional

import certifi

from rentals_shared import config
from rentals_shared.errors import InvalidRecord, ServiceUnavailable, UpstreamError

logger = logging.getLogger(__name__)

_CERT_BUNDLE = certifi.where()

_INTENT_FIELDS = ("id", "status", "amount", "capture_method", "payment_method")

Opener = Callable[..., Any]


def _ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=_CERT_BUNDLE)


def _summarize_intent(payload: Dict[str, Any]) -> Dict[str, Any]:
    summary = {name: payload.get(name) for name in _INTENT_FIELDS}
    charges = payload.get("charges")
    summary["charges"] = charges.get("data", []) if isinstance(charges, dict) else []
    return summary


def retrieve_payment_intent(intent_id: str, opener: Optional[Opener] = None) -> Dict[str, Any]:
    """GET /v1/payment_intents/<id> and return the fields the admin view shows."""
    if not intent_id or not str(intent_id).strip():
        raise InvalidRecord("payment intent id is required")
    if not config.STRIPE_SECRET_KEY:
        raise ServiceUnavailable("Payment provider is not configured")

    url = f"{config.STRIPE_API_BASE.rstrip('/')}/v1/payment_intents/{urllib.parse.quote(str(intent_id), safe='')}"
    req = urllib.request.Request(
        url=url,
        method="GET",
        headers={"Authorization": f"Bearer {config.STRIPE_SECRET_KEY}"},
    )
    opener = opener or urllib.request.urlopen
    try:
        with opener(req, timeout=config.STRIPE_TIMEOUT_SECONDS, context=_ssl_context()) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        logger.warning("Payment intent %s lookup failed: http_%s", intent_id, exc.code)
        raise UpstreamError(
            f"Payment provider returned HTTP {exc.code}",
            {"payment_intent_id": intent_id, "status": exc.code},
        ) from exc
    except OSError as exc:
        # URLError, and timeouts or resets raised while reading the body.
        logger.warning("Payment intent %s lookup failed: %s", intent_id, getattr(exc, "reason", exc))
        raise UpstreamError("Payment provider unreachable", {"payment_intent_id": intent_id}) from exc
    except ValueError as exc:
        raise UpstreamError("Payment provider returned invalid JSON", {"payment_intent_id": intent_id}) from exc

    if not isinstance(payload, dict):
        raise UpstreamError("Payment provider returned an unexpected payload", {"payment_intent_id": intent_id})
    return _summarize_intent(payload)
