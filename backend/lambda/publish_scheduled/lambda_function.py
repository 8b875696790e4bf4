"""publish_scheduled/lambda_function.py

Publishes blog posts whose ``scheduled_at`` has passed.

Triggers:
    EventBridge schedule (rate(5 minutes))        — no auth, returns the report dict
    POST /api/admin/blog/publish-scheduled        — manual run; a bearer token is
                                                    verified when present

Response:
    {processed, published, failed, errors, stats}

Environment variables:
    CONTENT_TABLE          DynamoDB table backing the content store
    DYNAMODB_REGION        default: us-west-2
    ADMIN_JWT_SECRET       HS256 signing secret (HTTP trigger only)
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from rentals_shared.auth import authenticate
from rentals_shared.blog import BlogStore
from rentals_shared.errors import ContentStoreError
from rentals_shared.http_utils import _error, _error_from, _options, _path_method, _response
from rentals_shared.kv import KVClient
from rentals_shared.scheduler import publish_scheduled

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_kv = None


def _get_kv():
    global _kv
    if _kv is None:
        _kv = KVClient()
    return _kv


def _is_http(event: Dict[str, Any]) -> bool:
    return bool(event.get("requestContext") or event.get("httpMethod") or event.get("rawPath"))


def _run() -> Dict[str, Any]:
    blog = BlogStore(_get_kv())
    report = publish_scheduled(blog)
    result = report.to_dict()
    result["success"] = not report.failed
    result["stats"] = blog.get_stats()
    return result


def _handle_scheduled(event: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(
        "publish_scheduled: invoked source=%s detail_type=%s",
        event.get("source", "unknown"),
        event.get("detail-type", ""),
    )
    # Let failures surface so the scheduler's retry/alarm sees them.
    return _run()


def _handle_http(event: Dict[str, Any]) -> Dict[str, Any]:
    method, path = _path_method(event)
    logger.info("publish_scheduled: %s %s", method, path)
    if method == "OPTIONS":
        return _options()
    if method != "POST":
        return _error(405, f"Method {method} not allowed.")

    try:
        authenticate(event, required=False)
        return _response(200, _run())
    except ContentStoreError as exc:
        return _error_from(exc)
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return _error(500, "Internal service error")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    if _is_http(event or {}):
        return _handle_http(event)
    return _handle_scheduled(event or {})
