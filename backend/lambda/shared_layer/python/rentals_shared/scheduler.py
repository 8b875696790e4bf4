"""rentals_shared.scheduler — Publish scheduled posts whose time has come.

Invoked by a periodic job. Each due post goes through the normal update
path (so it moves from ``posts:scheduled`` to ``posts:published``) guarded
by ``expected_status="scheduled"``. Posts already published no longer match,
so re-running is harmless. A post that fails to transition is reported by
id; the ones that succeeded stay published.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rentals_shared.blog import BlogStore
from rentals_shared.serialization import _emit_structured_observability, _iso_z, _parse_iso8601, _utcnow

logger = logging.getLogger(__name__)


@dataclass
class PublishReport:
    now: str
    processed: int = 0
    published: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now,
            "processed": self.processed,
            "published": list(self.published),
            "failed": list(self.failed),
            "errors": dict(self.errors),
        }


def is_due(post: Dict[str, Any], now: dt.datetime) -> bool:
    if post.get("status") != "scheduled":
        return False
    when = _parse_iso8601(post.get("scheduled_at"))
    return when is not None and when <= now


def publish_scheduled(blog: BlogStore, now: Optional[dt.datetime] = None) -> PublishReport:
    now = now or _utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)

    started = time.monotonic()
    outcome = blog.posts.transition_matching(
        lambda post: is_due(post, now),
        {"status": "published"},
        expected_status="scheduled",
    )
    report = PublishReport(
        now=_iso_z(now),
        processed=outcome.processed,
        published=outcome.succeeded,
        failed=outcome.failed,
        errors=outcome.errors,
    )

    if report.failed:
        logger.warning(
            "Scheduled publishing finished with failures: %d published, %d failed (%s)",
            len(report.published),
            len(report.failed),
            ", ".join(report.failed),
        )
    else:
        logger.info("Scheduled publishing finished: %d published", len(report.published))
    _emit_structured_observability(
        component="scheduler",
        event="publish_scheduled",
        latency_ms=int((time.monotonic() - started) * 1000),
        error_code="partial_failure" if report.failed else "",
        extra={"processed": report.processed, "published": len(report.published), "failed": report.failed},
    )
    return report
