"""rentals_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope and error formatting used by all rentals API
Lambda functions.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, Tuple

from rentals_shared import config
from rentals_shared.errors import ContentStoreError, InvalidRecord

logger = logging.getLogger(__name__)

_DEFAULT_CODES = {
    400: "INVALID_INPUT",
    401: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGIN,
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Internal-Api-Key",
        "Access-Control-Allow-Credentials": "true",
    }


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {**_cors_headers(), "Content-Type": "application/json"},
        "body": json.dumps(body, default=str),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    ``code`` and ``retryable`` may be passed explicitly; otherwise they are
    derived from the status. Remaining keyword arguments become details.
    """
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        code = _DEFAULT_CODES.get(status_code, "INTERNAL_ERROR")
    retryable = bool(extra.pop("retryable", status_code >= 500))
    details = dict(extra)
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    payload.update(details)
    return _response(status_code, payload)


def _error_from(exc: ContentStoreError) -> Dict[str, Any]:
    """Translate a store error into the error envelope."""
    if exc.status_code >= 500:
        logger.error("%s: %s %s", exc.code, exc.message, exc.details)
    return _error(exc.status_code, exc.message, code=exc.code, retryable=exc.retryable, **exc.details)


def _options() -> Dict[str, Any]:
    return {"statusCode": 204, "headers": _cors_headers(), "body": ""}


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse a JSON object body (handles base64); raises InvalidRecord."""
    raw = event.get("body") or "{}"
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        raise InvalidRecord("Invalid JSON body.") from None
    if not isinstance(body, dict):
        raise InvalidRecord("Request body must be a JSON object.")
    return body


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v1/v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path.rstrip("/") or "/"


def _query(event: Dict[str, Any]) -> Dict[str, str]:
    return {k: v for k, v in (event.get("queryStringParameters") or {}).items() if v is not None}
