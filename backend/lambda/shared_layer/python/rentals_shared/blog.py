"""rentals_shared.blog — Blog posts, categories and tags over the content store.

Key layout:

    post:<id>, category:<id>, tag:<id>       primary records
    posts:all, categories:all, tags:all      id sets
    posts:draft|scheduled|published          status index
    posts:category:<id>, posts:tag:<id>      membership indexes

Post status machine:

    draft     -> draft | scheduled | published
    scheduled -> scheduled | published | draft
    published -> published

Scheduling needs a ``scheduled_at`` in the future; the scheduler trigger
(``rentals_shared.scheduler``) publishes posts whose time has come.
``post_count`` on categories and tags mirrors the membership set size. Every
post write refreshes it for the terms the post joined or left;
``update_category_counts`` / ``update_tag_counts`` repair any that drifted.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from rentals_shared.codec import POST_STATUSES
from rentals_shared.errors import Conflict, InvalidRecord, NotFound
from rentals_shared.indexes import attribute_index, status_index
from rentals_shared.serialization import _iso_z, _parse_iso8601
from rentals_shared.store import ContentStore, EntityConfig

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    None: {"draft", "scheduled", "published"},
    "draft": {"draft", "scheduled", "published"},
    "scheduled": {"scheduled", "published", "draft"},
    "published": {"published"},
}


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", str(text or "").lower()).strip("-")


def _normalize_ids(raw: Any) -> Any:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple, set)):
        return raw  # left for the codec to reject
    return sorted({str(v).strip() for v in raw if v is not None and str(v).strip()})


def _prepare_post(
    record: Dict[str, Any],
    previous: Optional[Dict[str, Any]],
    now: dt.datetime,
) -> Dict[str, Any]:
    record["category_ids"] = _normalize_ids(record.get("category_ids"))
    record["tag_ids"] = _normalize_ids(record.get("tag_ids"))
    if not record.get("slug") and isinstance(record.get("title"), str):
        record["slug"] = slugify(record["title"]) or record["id"]
    record.setdefault("status", "draft")

    status = record["status"]
    if status not in POST_STATUSES:
        return record  # codec reports the bad value

    prev_status = previous.get("status") if previous else None
    if status not in _TRANSITIONS.get(prev_status, set()):
        raise InvalidRecord(
            f"Invalid status transition {prev_status} -> {status}",
            {"fields": {"status": f"cannot move from {prev_status} to {status}"}},
        )

    if status == "scheduled":
        when = _parse_iso8601(record.get("scheduled_at"))
        if when is None:
            raise InvalidRecord(
                "Scheduled posts need a valid scheduled_at",
                {"fields": {"scheduled_at": "required ISO 8601 timestamp when status is scheduled"}},
            )
        unchanged = (
            prev_status == "scheduled"
            and _parse_iso8601(previous.get("scheduled_at")) == when
        )
        if not unchanged and when <= now:
            raise InvalidRecord(
                "scheduled_at must be in the future",
                {"fields": {"scheduled_at": "must be later than now"}},
            )
        record["scheduled_at"] = _iso_z(when)
        record.pop("published_at", None)
    elif status == "published":
        record.pop("scheduled_at", None)
        if prev_status != "published":
            record["published_at"] = _iso_z(now)
    else:
        record.pop("scheduled_at", None)
        record.pop("published_at", None)
    return record


def _prepare_taxonomy(
    record: Dict[str, Any],
    previous: Optional[Dict[str, Any]],
    now: dt.datetime,
) -> Dict[str, Any]:
    if not record.get("slug") and isinstance(record.get("name"), str):
        record["slug"] = slugify(record["name"]) or record["id"]
    # post_count is derived; callers never set it.
    record["post_count"] = int((previous or {}).get("post_count", record.get("post_count", 0)) or 0)
    return record


POST_ENTITY = EntityConfig(
    kind="post",
    plural="posts",
    indexes=(
        status_index(),
        attribute_index("category", "category_ids"),
        attribute_index("tag", "tag_ids"),
    ),
    search_fields=("title", "body", "excerpt"),
    prepare=_prepare_post,
)

CATEGORY_ENTITY = EntityConfig(
    kind="category",
    plural="categories",
    search_fields=("name", "description"),
    prepare=_prepare_taxonomy,
    timestamps=False,
)

TAG_ENTITY = EntityConfig(
    kind="tag",
    plural="tags",
    search_fields=("name",),
    prepare=_prepare_taxonomy,
    timestamps=False,
)

_TAXONOMY_FIELDS = {"category": "category_ids", "tag": "tag_ids"}


def _by_name(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda r: (str(r.get("name", "")).casefold(), str(r.get("id"))))


class BlogStore:
    def __init__(self, kv, clock: Optional[Callable[[], dt.datetime]] = None):
        self.kv = kv
        self.posts = ContentStore(kv, POST_ENTITY, clock=clock, after_write=self._refresh_term_counts)
        self.categories = ContentStore(kv, CATEGORY_ENTITY, clock=clock)
        self.tags = ContentStore(kv, TAG_ENTITY, clock=clock)

    # -- posts -------------------------------------------------------------

    def _refresh_term_counts(self, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> None:
        """Keep post_count equal to membership for every term a post write touched."""
        for kind, attribute in _TAXONOMY_FIELDS.items():
            touched = set((before or {}).get(attribute) or []) | set((after or {}).get(attribute) or [])
            if touched:
                self.posts.indexes.refresh_counts(kind, kind, touched)

    def get_post(self, post_id: str) -> Optional[Dict[str, Any]]:
        return self.posts.get(post_id)

    def get_post_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        for post in self.posts.list_all():
            if post.get("slug") == slug:
                return post
        return None

    def _ensure_slug_free(self, slug: str, post_id: Optional[str]) -> None:
        if not slug:
            return
        owner = self.get_post_by_slug(slug)
        if owner is not None and owner["id"] != post_id:
            raise Conflict("A post with this slug already exists", {"slug": slug, "id": owner["id"]})

    def create_post(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise InvalidRecord("post must be an object")
        slug = data.get("slug") or slugify(data.get("title") or "")
        self._ensure_slug_free(slug, data.get("id"))
        return self.posts.create(data)

    def update_post(
        self,
        post_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Dict[str, Any]:
        if isinstance(patch, dict) and patch.get("slug"):
            self._ensure_slug_free(patch["slug"], post_id)
        return self.posts.update(post_id, patch, expected_status=expected_status)

    def delete_post(self, post_id: str) -> Dict[str, Any]:
        return self.posts.delete(post_id)

    def list_posts(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status:
            if status not in POST_STATUSES:
                raise InvalidRecord(f"Unknown post status '{status}'", {"fields": {"status": "unknown"}})
            return self.posts.list_index("status", status)
        return self.posts.list_all()

    def get_published(self) -> List[Dict[str, Any]]:
        return self.posts.list_index("status", "published")

    def get_by_category(self, category_id: str, published_only: bool = True) -> List[Dict[str, Any]]:
        posts = self.posts.list_index("category", category_id)
        if published_only:
            posts = [p for p in posts if p.get("status") == "published"]
        return posts

    def get_by_tag(self, tag_id: str, published_only: bool = True) -> List[Dict[str, Any]]:
        posts = self.posts.list_index("tag", tag_id)
        if published_only:
            posts = [p for p in posts if p.get("status") == "published"]
        return posts

    def search(self, term: str, published_only: bool = False) -> List[Dict[str, Any]]:
        posts = self.posts.search(term)
        if published_only:
            posts = [p for p in posts if p.get("status") == "published"]
        return posts

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate counts from index cardinalities; no record is read."""
        category_ids = sorted(self.categories.ids())
        tag_ids = sorted(self.tags.ids())
        return {
            "total_posts": self.posts.count(),
            "posts_by_status": {s: self.posts.count("status", s) for s in sorted(POST_STATUSES)},
            "posts_by_category": {c: self.posts.count("category", c) for c in category_ids},
            "posts_by_tag": {t: self.posts.count("tag", t) for t in tag_ids},
            "total_categories": len(category_ids),
            "total_tags": len(tag_ids),
        }

    # -- categories / tags -------------------------------------------------

    def _taxonomy(self, kind: str) -> ContentStore:
        return self.categories if kind == "category" else self.tags

    def _create_term(self, kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise InvalidRecord(f"{kind} must be an object")
        store = self._taxonomy(kind)
        record = dict(data)
        record["id"] = str(record.get("id") or store.new_id())
        record["post_count"] = self.posts.count(kind, record["id"])
        return store.create(record)

    def _update_term(self, kind: str, term_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        patch = {k: v for k, v in (patch or {}).items() if k != "post_count"}
        return self._taxonomy(kind).update(term_id, patch)

    def _delete_term(self, kind: str, term_id: str) -> Dict[str, Any]:
        store = self._taxonomy(kind)
        if self.kv.get(store.primary_key(term_id)) is None:
            raise NotFound(f"{kind.capitalize()} '{term_id}' not found", {"id": term_id})
        attribute = _TAXONOMY_FIELDS[kind]
        for post in self.posts.list_index(kind, term_id):
            remaining = [v for v in post.get(attribute, []) if v != term_id]
            try:
                self.posts.update(post["id"], {attribute: remaining})
            except NotFound:
                logger.info("Post %s vanished while detaching %s %s", post["id"], kind, term_id)
        self.posts.indexes.drop_index(kind, term_id)
        return store.delete(term_id)

    def create_category(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._create_term("category", data)

    def get_category(self, category_id: str) -> Optional[Dict[str, Any]]:
        return self.categories.get(category_id)

    def list_categories(self) -> List[Dict[str, Any]]:
        return _by_name(self.categories.load_many(self.categories.ids(), "categories:all"))

    def update_category(self, category_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self._update_term("category", category_id, patch)

    def delete_category(self, category_id: str) -> Dict[str, Any]:
        """Detach the category from its posts, then delete it."""
        return self._delete_term("category", category_id)

    def create_tag(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._create_term("tag", data)

    def get_tag(self, tag_id: str) -> Optional[Dict[str, Any]]:
        return self.tags.get(tag_id)

    def list_tags(self) -> List[Dict[str, Any]]:
        return _by_name(self.tags.load_many(self.tags.ids(), "tags:all"))

    def update_tag(self, tag_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self._update_term("tag", tag_id, patch)

    def delete_tag(self, tag_id: str) -> Dict[str, Any]:
        return self._delete_term("tag", tag_id)

    def update_category_counts(self) -> Dict[str, int]:
        return self.posts.indexes.resync_counts("category", "categories", "category")

    def update_tag_counts(self) -> Dict[str, int]:
        return self.posts.indexes.resync_counts("tag", "tags", "tag")
