"""blog_api/lambda_function.py

Lambda API for the rentals blog: public reads and admin management of
posts, categories and tags stored in the content table.

Routes (via API Gateway proxy):
    GET    /api/blog                                   — published posts (?search, ?category, ?tag, ?limit, ?offset)
    GET    /api/blog/categories | /api/blog/tags       — public taxonomy lists
    GET    /api/blog/{slug}                            — one published post
    GET    /api/admin/blog                             — all posts (?status, ?search, ?limit, ?offset)
    POST   /api/admin/blog                             — create post
    GET    /api/admin/blog/{postId}                    — read post
    PUT    /api/admin/blog/{postId}                    — update post (PATCH accepted)
    DELETE /api/admin/blog/{postId}                    — delete post
    GET    /api/admin/blog/stats                       — index-derived counts
    GET    /api/admin/blog/debug/keys?pattern=post:*   — read-only key listing (not a snapshot)
    GET    /api/admin/blog/{categories|tags}           — list
    POST   /api/admin/blog/{categories|tags}           — create
    PUT    /api/admin/blog/{categories|tags}/{id}      — update (PATCH accepted)
    DELETE /api/admin/blog/{categories|tags}/{id}      — delete, detaching it from posts
    POST   /api/admin/blog/{categories|tags}/update-counts — resync post_count
    OPTIONS *                                          — CORS preflight

Auth:
    Admin routes require ``Authorization: Bearer <jwt>`` (HS256) or an
    ``X-Internal-Api-Key`` header. Public routes are anonymous.

Environment variables:
    CONTENT_TABLE          DynamoDB table backing the content store
    DYNAMODB_REGION        default: us-west-2
    ADMIN_JWT_SECRET       HS256 signing secret
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from rentals_shared import config
from rentals_shared.auth import authenticate
from rentals_shared.blog import BlogStore
from rentals_shared.errors import ContentStoreError, NotFound, ServiceUnavailable
from rentals_shared.http_utils import _error, _error_from, _json_body, _options, _path_method, _query, _response
from rentals_shared.kv import KVClient
from rentals_shared.store import paginate

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

_ID = r"[A-Za-z0-9_-]+"
_ADMIN_COUNTS_PATTERN = re.compile(r"/api/admin/blog/(?P<kind>categories|tags)/update-counts$")
_ADMIN_TERM_PATTERN = re.compile(rf"/api/admin/blog/(?P<kind>categories|tags)/(?P<termId>{_ID})$")
_ADMIN_TERMS_PATTERN = re.compile(r"/api/admin/blog/(?P<kind>categories|tags)$")
_ADMIN_STATS_PATTERN = re.compile(r"/api/admin/blog/stats$")
_ADMIN_DEBUG_KEYS_PATTERN = re.compile(r"/api/admin/blog/debug/keys$")
_ADMIN_POST_PATTERN = re.compile(rf"/api/admin/blog/(?P<postId>{_ID})$")
_ADMIN_POSTS_PATTERN = re.compile(r"/api/admin/blog$")
_PUBLIC_TERMS_PATTERN = re.compile(r"/api/blog/(?P<kind>categories|tags)$")
_PUBLIC_POST_PATTERN = re.compile(rf"/api/blog/(?P<slug>{_ID})$")
_PUBLIC_POSTS_PATTERN = re.compile(r"/api/blog$")

_KIND = {"categories": "category", "tags": "tag"}

# ---------------------------------------------------------------------------
# Store access
# ---------------------------------------------------------------------------

_kv = None


def _get_kv():
    global _kv
    if _kv is None:
        _kv = KVClient()
    return _kv


def _blog() -> BlogStore:
    return BlogStore(_get_kv())


def _page(posts, qs: Dict[str, str]) -> Dict[str, Any]:
    page = paginate(posts, qs.get("limit"), qs.get("offset"))
    return {
        "success": True,
        "posts": page["items"],
        "pagination": {
            "total": page["total"],
            "limit": page["limit"],
            "offset": page["offset"],
            "has_more": page["has_more"],
        },
    }


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------


def _handle_public_posts(qs: Dict[str, str]) -> Dict:
    blog = _blog()
    if qs.get("search"):
        posts = blog.search(qs["search"], published_only=True)
    elif qs.get("category"):
        posts = blog.get_by_category(qs["category"])
    elif qs.get("tag"):
        posts = blog.get_by_tag(qs["tag"])
    else:
        posts = blog.get_published()
    return _response(200, _page(posts, qs))


def _handle_public_post(slug: str) -> Dict:
    post = _blog().get_post_by_slug(slug)
    if post is None or post.get("status") != "published":
        raise NotFound("Blog post not found", {"slug": slug})
    return _response(200, {"success": True, "post": post})


def _handle_public_terms(kind: str) -> Dict:
    blog = _blog()
    terms = blog.list_categories() if kind == "categories" else blog.list_tags()
    return _response(200, {"success": True, kind: terms})


# ---------------------------------------------------------------------------
# Admin — posts
# ---------------------------------------------------------------------------


def _with_author(body: Dict[str, Any], claims: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if body.get("author") or not claims:
        return body
    name = claims.get("name") or claims.get("email") or claims.get("sub")
    if not name:
        return body
    author = {"name": name}
    if claims.get("email"):
        author["email"] = claims["email"]
    return {**body, "author": author}


def _handle_admin_posts(method: str, event: Dict, qs: Dict[str, str], claims: Dict[str, Any]) -> Dict:
    blog = _blog()
    if method == "GET":
        if qs.get("search"):
            posts = blog.search(qs["search"], published_only=False)
            if qs.get("status"):
                posts = [p for p in posts if p.get("status") == qs["status"]]
        else:
            posts = blog.list_posts(qs.get("status") or None)
        return _response(200, _page(posts, qs))
    if method == "POST":
        post = blog.create_post(_with_author(_json_body(event), claims))
        logger.info("blog post created: %s status=%s", post["id"], post["status"])
        return _response(201, {"success": True, "post": post})
    return _error(405, f"Method {method} not allowed.")


def _handle_admin_post(method: str, event: Dict, post_id: str) -> Dict:
    blog = _blog()
    if method == "GET":
        post = blog.get_post(post_id)
        if post is None:
            raise NotFound("Blog post not found", {"id": post_id})
        return _response(200, {"success": True, "post": post})
    if method in ("PUT", "PATCH"):
        post = blog.update_post(post_id, _json_body(event))
        logger.info("blog post updated: %s status=%s", post_id, post["status"])
        return _response(200, {"success": True, "post": post})
    if method == "DELETE":
        blog.delete_post(post_id)
        return _response(200, {"success": True, "id": post_id})
    return _error(405, f"Method {method} not allowed.")


# ---------------------------------------------------------------------------
# Admin — categories / tags
# ---------------------------------------------------------------------------


def _handle_admin_terms(method: str, event: Dict, kind: str) -> Dict:
    blog = _blog()
    if method == "GET":
        return _handle_public_terms(kind)
    if method == "POST":
        body = _json_body(event)
        term = blog.create_category(body) if kind == "categories" else blog.create_tag(body)
        return _response(201, {"success": True, _KIND[kind]: term})
    return _error(405, f"Method {method} not allowed.")


def _handle_admin_term(method: str, event: Dict, kind: str, term_id: str) -> Dict:
    blog = _blog()
    if method in ("PUT", "PATCH"):
        body = _json_body(event)
        term = blog.update_category(term_id, body) if kind == "categories" else blog.update_tag(term_id, body)
        return _response(200, {"success": True, _KIND[kind]: term})
    if method == "DELETE":
        if kind == "categories":
            blog.delete_category(term_id)
        else:
            blog.delete_tag(term_id)
        return _response(200, {"success": True, "id": term_id})
    if method == "GET":
        term = blog.get_category(term_id) if kind == "categories" else blog.get_tag(term_id)
        if term is None:
            raise NotFound(f"{_KIND[kind].capitalize()} not found", {"id": term_id})
        return _response(200, {"success": True, _KIND[kind]: term})
    return _error(405, f"Method {method} not allowed.")


def _handle_update_counts(method: str, kind: str) -> Dict:
    if method != "POST":
        return _error(405, f"Method {method} not allowed.")
    if not config.store_configured():
        raise ServiceUnavailable("Content store is not configured")
    blog = _blog()
    counts = blog.update_category_counts() if kind == "categories" else blog.update_tag_counts()
    return _response(200, {"success": True, "counts": counts})


def _handle_admin(method: str, path: str, event: Dict, qs: Dict[str, str]) -> Dict:
    claims = authenticate(event)

    m = _ADMIN_COUNTS_PATTERN.search(path)
    if m:
        return _handle_update_counts(method, m.group("kind"))

    m = _ADMIN_TERM_PATTERN.search(path)
    if m:
        return _handle_admin_term(method, event, m.group("kind"), m.group("termId"))

    m = _ADMIN_TERMS_PATTERN.search(path)
    if m:
        return _handle_admin_terms(method, event, m.group("kind"))

    if _ADMIN_STATS_PATTERN.search(path):
        if method != "GET":
            return _error(405, f"Method {method} not allowed.")
        return _response(200, {"success": True, "stats": _blog().get_stats()})

    if _ADMIN_DEBUG_KEYS_PATTERN.search(path):
        if method != "GET":
            return _error(405, f"Method {method} not allowed.")
        pattern = qs.get("pattern") or "*"
        return _response(200, {"success": True, "pattern": pattern, "keys": _get_kv().keys_matching(pattern)})

    m = _ADMIN_POST_PATTERN.search(path)
    if m:
        return _handle_admin_post(method, event, m.group("postId"))

    if _ADMIN_POSTS_PATTERN.search(path):
        return _handle_admin_posts(method, event, qs, claims)

    return _error(404, f"Route not found: {method} {path}")


def _handle_public(method: str, path: str, qs: Dict[str, str]) -> Dict:
    if method != "GET":
        return _error(405, f"Method {method} not allowed. Public blog routes are read-only.")

    m = _PUBLIC_TERMS_PATTERN.search(path)
    if m:
        return _handle_public_terms(m.group("kind"))

    m = _PUBLIC_POST_PATTERN.search(path)
    if m:
        return _handle_public_post(m.group("slug"))

    if _PUBLIC_POSTS_PATTERN.search(path):
        return _handle_public_posts(qs)

    return _error(404, f"Route not found: {method} {path}")


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict:
    method, path = _path_method(event)
    qs = _query(event)
    logger.info("blog_api: %s %s qs_keys=%s", method, path, sorted(qs.keys()))

    if method == "OPTIONS":
        return _options()

    try:
        if "/api/admin/" in path:
            return _handle_admin(method, path, event, qs)
        return _handle_public(method, path, qs)
    except ContentStoreError as exc:
        return _error_from(exc)
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return _error(500, "Internal service error")
