"""rentals_shared.errors — Error taxonomy shared by the store and the handlers.

Each error carries the HTTP status and envelope code the handlers surface,
plus whether a caller may retry.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ContentStoreError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class Unauthorized(ContentStoreError):
    status_code = 401
    code = "PERMISSION_DENIED"


class NotFound(ContentStoreError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidRecord(ContentStoreError):
    status_code = 400
    code = "INVALID_INPUT"


class Conflict(ContentStoreError):
    status_code = 409
    code = "CONFLICT"


class CorruptRecord(ContentStoreError):
    """A stored value failed to decode; list reads skip these."""

    status_code = 500
    code = "CORRUPT_RECORD"


class StoreUnavailable(ContentStoreError):
    status_code = 503
    code = "STORE_UNAVAILABLE"
    retryable = True


class ServiceUnavailable(ContentStoreError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class UpstreamError(ContentStoreError):
    status_code = 502
    code = "UPSTREAM_ERROR"
    retryable = True
