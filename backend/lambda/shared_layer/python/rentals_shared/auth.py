"""rentals_shared.auth — Admin authentication for the rentals Lambdas.

Admin requests carry ``Authorization: Bearer <jwt>``, an HS256 token signed
with ``ADMIN_JWT_SECRET``. Trusted jobs may instead send one of the
configured internal keys in ``X-Internal-Api-Key``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import jwt

from rentals_shared import config
from rentals_shared.errors import Unauthorized

logger = logging.getLogger(__name__)

INTERNAL_KEY_HEADER = "x-internal-api-key"


def _header(event: Dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    for key, value in headers.items():
        if str(key).lower() == name and isinstance(value, str):
            return value.strip()
    return ""


def _extract_bearer(event: Dict[str, Any]) -> Optional[str]:
    """Return the bearer token from the Authorization header, if any."""
    raw = _header(event, "authorization")
    if not raw:
        return None
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify(token: str) -> Dict[str, Any]:
    """Verify an admin JWT (HS256). Returns the decoded claims."""
    if not config.ADMIN_JWT_SECRET:
        raise Unauthorized("Admin authentication is not configured")

    options = {"verify_exp": True, "verify_aud": bool(config.ADMIN_JWT_AUDIENCE)}
    try:
        return jwt.decode(
            token,
            config.ADMIN_JWT_SECRET,
            algorithms=["HS256"],
            audience=config.ADMIN_JWT_AUDIENCE or None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired. Please sign in again.") from None
    except jwt.InvalidAudienceError:
        raise Unauthorized("Token audience mismatch.") from None
    except jwt.PyJWTError as exc:
        raise Unauthorized(f"Token validation failed: {exc}") from exc


def authenticate(event: Dict[str, Any], required: bool = True) -> Optional[Dict[str, Any]]:
    """Authenticate a request via internal key or bearer JWT.

    Returns the principal's claims. With ``required=False`` a request that
    carries no credentials yields ``None``; credentials that are present are
    always verified.
    """
    internal_key = _header(event, INTERNAL_KEY_HEADER)
    if internal_key:
        if internal_key in config.INTERNAL_API_KEYS:
            return {"auth_mode": "internal-key"}
        raise Unauthorized("Invalid internal API key")

    token = _extract_bearer(event)
    if not token:
        if required:
            raise Unauthorized("Authentication required. Please sign in.")
        return None

    claims = verify(token)
    logger.info("Authenticated admin principal %s", claims.get("sub") or claims.get("email") or "unknown")
    return claims
