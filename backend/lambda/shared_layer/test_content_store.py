"""test_content_store.py — Blog content store behaviour against the in-memory KV.

Run: python3 -m pytest backend/lambda/shared_layer/test_content_store.py -v
"""

from __future__ import annotations

import logging

import pytest

from rentals_shared import codec
from rentals_shared.blog import BlogStore, slugify
from rentals_shared.errors import Conflict, InvalidRecord, NotFound
from rentals_shared.store import coerce_page_params, paginate


def _post(title="Ferrari 488 Spider review", **overrides):
    data = {"title": title, "body": "Top down along the coast.", "category_ids": [], "tag_ids": []}
    data.update(overrides)
    return data


@pytest.fixture
def blog(kv, clock):
    return BlogStore(kv, clock=clock)


# ---------------------------------------------------------------------------
# Create / indexes
# ---------------------------------------------------------------------------


def test_create_adds_primary_and_index_memberships(blog, kv):
    post = blog.create_post(_post(category_ids=["c1"], tag_ids=["t1", "t2"]))

    assert kv.values[f"post:{post['id']}"] == codec.encode(post)
    assert post["id"] in kv.sets["posts:all"]
    assert post["id"] in kv.sets["posts:draft"]
    assert post["id"] in kv.sets["posts:category:c1"]
    assert post["id"] in kv.sets["posts:tag:t1"]
    assert post["id"] in kv.sets["posts:tag:t2"]
    assert [p["id"] for p in blog.get_by_category("c1", published_only=False)] == [post["id"]]


def test_create_defaults(blog, clock):
    post = blog.create_post(_post(category_ids=["c2", "c1", "c1"]))
    assert post["status"] == "draft"
    assert post["slug"] == "ferrari-488-spider-review"
    assert post["category_ids"] == ["c1", "c2"]
    assert post["created_at"] == post["updated_at"] == "2026-03-01T12:00:00Z"


def test_create_invalid_record_writes_nothing(blog, kv):
    with pytest.raises(InvalidRecord) as ctx:
        blog.create_post({"body": "no title"})
    assert "title" in ctx.value.details["fields"]
    assert kv.writes() == []


def test_duplicate_slug_conflicts(blog):
    blog.create_post(_post("Hello World"))
    with pytest.raises(Conflict):
        blog.create_post(_post("Hello  World!"))


def test_slugify():
    assert slugify("McLaren 720S: Track Day!") == "mclaren-720s-track-day"


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


def test_update_moves_memberships(blog, kv):
    post = blog.create_post(_post(category_ids=["c1"], tag_ids=["t1"]))
    blog.update_post(post["id"], {"category_ids": ["c2"], "status": "published"})

    assert post["id"] not in kv.sets.get("posts:category:c1", set())
    assert post["id"] in kv.sets["posts:category:c2"]
    assert post["id"] in kv.sets["posts:tag:t1"]
    assert post["id"] not in kv.sets.get("posts:draft", set())
    assert post["id"] in kv.sets["posts:published"]


def test_update_missing_post(blog):
    with pytest.raises(NotFound):
        blog.update_post("nope", {"title": "x"})


def test_update_cannot_change_id(blog):
    post = blog.create_post(_post())
    with pytest.raises(InvalidRecord):
        blog.update_post(post["id"], {"id": "other"})


def test_update_none_drops_optional_field(blog):
    post = blog.create_post(_post(excerpt="Short"))
    updated = blog.update_post(post["id"], {"excerpt": None})
    assert "excerpt" not in updated


def test_expected_status_guard(blog):
    post = blog.create_post(_post())
    with pytest.raises(Conflict):
        blog.update_post(post["id"], {"status": "published"}, expected_status="scheduled")
    assert blog.get_post(post["id"])["status"] == "draft"


def test_publish_sets_published_at(blog, clock):
    post = blog.create_post(_post())
    clock.advance(minutes=5)
    published = blog.update_post(post["id"], {"status": "published"})
    assert published["published_at"] == "2026-03-01T12:05:00Z"


def test_published_post_cannot_revert(blog, kv):
    post = blog.create_post(_post(status="published"))
    kv.calls.clear()
    with pytest.raises(InvalidRecord):
        blog.update_post(post["id"], {"status": "draft"})
    assert kv.writes() == []


def test_unschedule_returns_to_draft(blog, kv):
    post = blog.create_post(_post(status="scheduled", scheduled_at="2026-03-02T09:00:00Z"))
    draft = blog.update_post(post["id"], {"status": "draft"})
    assert "scheduled_at" not in draft
    assert post["id"] in kv.sets["posts:draft"]
    assert post["id"] not in kv.sets.get("posts:scheduled", set())


def test_past_schedule_fails_without_state_change(blog, kv):
    post = blog.create_post(_post())
    before = dict(kv.values), {k: set(v) for k, v in kv.sets.items()}
    kv.calls.clear()

    with pytest.raises(InvalidRecord) as ctx:
        blog.update_post(post["id"], {"status": "scheduled", "scheduled_at": "2026-02-28T00:00:00Z"})

    assert "scheduled_at" in ctx.value.details["fields"]
    assert kv.writes() == []
    assert (dict(kv.values), {k: set(v) for k, v in kv.sets.items()}) == before
    assert blog.get_post(post["id"])["status"] == "draft"


def test_past_schedule_on_create_writes_nothing(blog, kv):
    with pytest.raises(InvalidRecord):
        blog.create_post(_post(status="scheduled", scheduled_at="2026-03-01T11:59:59Z"))
    assert kv.writes() == []


def test_scheduled_at_is_normalized(blog):
    post = blog.create_post(_post(status="scheduled", scheduled_at="2026-03-02T11:00:00+02:00"))
    assert post["scheduled_at"] == "2026-03-02T09:00:00Z"


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def test_delete_removes_all_memberships(blog, kv):
    post = blog.create_post(_post(status="published", category_ids=["c1"], tag_ids=["t1"]))
    blog.delete_post(post["id"])

    assert f"post:{post['id']}" not in kv.values
    assert all(post["id"] not in members for members in kv.sets.values())
    assert blog.get_post(post["id"]) is None


def test_delete_missing_post(blog):
    with pytest.raises(NotFound):
        blog.delete_post("nope")


def test_corrupt_records_can_be_deleted(blog, kv):
    kv.set("post:broken", b"{not json")
    kv.set_add("posts:all", "broken")
    assert blog.delete_post("broken") == {"id": "broken"}
    assert "post:broken" not in kv.values
    assert "broken" not in kv.sets.get("posts:all", set())

    kv.set("category:c9", b"\xff")
    kv.set_add("categories:all", "c9")
    blog.delete_category("c9")
    assert "category:c9" not in kv.values
    assert "c9" not in kv.sets.get("categories:all", set())


# ---------------------------------------------------------------------------
# Divergence
# ---------------------------------------------------------------------------


def test_divergent_ids_are_skipped_and_logged(blog, kv, caplog):
    real = blog.create_post(_post())
    kv.set_add("posts:all", "ghost")
    kv.set_add("posts:all", "broken")
    kv.set("post:broken", b"{not json")

    with caplog.at_level(logging.WARNING):
        posts = blog.list_posts()

    assert [p["id"] for p in posts] == [real["id"]]
    assert "[CONSISTENCY] posts:all: skipped 1 missing, 1 corrupt, 0 stale member(s)" in caplog.text


def test_index_failure_after_primary_write_is_reported_not_rolled_back(blog, kv, caplog):
    kv.fail("set_add", lambda key: key.startswith("posts:tag:"))
    with caplog.at_level(logging.WARNING):
        post = blog.create_post(_post(tag_ids=["t1"]))

    assert blog.get_post(post["id"]) == post
    assert "posts:tag:t1" in caplog.text
    assert blog.get_by_tag("t1", published_only=False) == []

    kv.heal()
    result = blog.posts.indexes.rebuild(blog.posts.list_all())
    assert result.ok
    assert [p["id"] for p in blog.get_by_tag("t1", published_only=False)] == [post["id"]]


def test_stale_membership_is_filtered_on_read(blog, kv, caplog):
    post = blog.create_post(_post(category_ids=["c1"]))
    kv.fail("set_remove")
    blog.update_post(post["id"], {"category_ids": ["c2"]})
    kv.heal()

    assert post["id"] in kv.sets["posts:category:c1"]
    with caplog.at_level(logging.WARNING):
        assert blog.get_by_category("c1", published_only=False) == []
    assert "1 stale" in caplog.text
    assert [p["id"] for p in blog.get_by_category("c2", published_only=False)] == [post["id"]]


# ---------------------------------------------------------------------------
# Listing, pagination, search
# ---------------------------------------------------------------------------


def test_pagination_over_published_posts(blog):
    for n in range(120):
        blog.create_post(_post(f"Post {n:03d}", id=f"p{n:03d}", status="published"))
    posts = blog.get_published()

    last = paginate(posts, 50, 100)
    assert len(last["items"]) == 20
    assert last["total"] == 120
    assert last["has_more"] is False

    first = paginate(posts, 50, 0)
    assert len(first["items"]) == 50
    assert first["has_more"] is True
    assert [p["id"] for p in first["items"]][:3] == ["p000", "p001", "p002"]


def test_page_params_coerce_bad_input():
    assert coerce_page_params("-5", "abc") == (50, 0)
    assert coerce_page_params("10", "20") == (10, 20)
    assert coerce_page_params(None, None) == (50, 0)


def test_list_is_newest_first(blog, clock):
    older = blog.create_post(_post("Older"))
    clock.advance(hours=1)
    newer = blog.create_post(_post("Newer"))
    assert [p["id"] for p in blog.list_posts()] == [newer["id"], older["id"]]


def test_offset_created_at_is_stored_as_utc_and_ordered_by_instant(blog):
    earlier = blog.create_post(_post("Earlier", created_at="2026-03-01T10:00:00+05:00"))
    later = blog.create_post(_post("Later", created_at="2026-03-01T06:00:00Z"))

    assert earlier["created_at"] == "2026-03-01T05:00:00Z"
    assert [p["id"] for p in blog.list_posts()] == [later["id"], earlier["id"]]


def test_list_by_status(blog):
    draft = blog.create_post(_post("Draft"))
    published = blog.create_post(_post("Live", status="published"))
    assert [p["id"] for p in blog.list_posts("draft")] == [draft["id"]]
    assert [p["id"] for p in blog.get_published()] == [published["id"]]
    with pytest.raises(InvalidRecord):
        blog.list_posts("archived")


def test_search_is_case_insensitive(blog):
    hit = blog.create_post(_post("Ferrari 488 Spider review", status="published"))
    excerpt_hit = blog.create_post(_post("Weekend plans", excerpt="Our ferrari picks"))
    blog.create_post(_post("Porsche GT3 RS"))

    assert {p["id"] for p in blog.search("FERRARI")} == {hit["id"], excerpt_hit["id"]}
    assert [p["id"] for p in blog.search("ferrari", published_only=True)] == [hit["id"]]
    assert len(blog.search("")) == 3


def test_public_category_view_is_published_only(blog):
    blog.create_post(_post("Draft", category_ids=["c1"]))
    live = blog.create_post(_post("Live", category_ids=["c1"], status="published"))
    assert [p["id"] for p in blog.get_by_category("c1")] == [live["id"]]


def test_get_post_by_slug(blog):
    post = blog.create_post(_post("Lamborghini Urus"))
    assert blog.get_post_by_slug("lamborghini-urus")["id"] == post["id"]
    assert blog.get_post_by_slug("missing") is None


# ---------------------------------------------------------------------------
# Categories, tags, counters, stats
# ---------------------------------------------------------------------------


def test_resync_counts_is_correct_and_idempotent(blog, kv):
    blog.create_category({"id": "c1", "name": "Supercars"})
    blog.create_category({"id": "c2", "name": "SUVs"})
    for n in range(3):
        blog.create_post(_post(f"Super {n}", category_ids=["c1"]))
    blog.create_post(_post("Urus", category_ids=["c2"]))
    kv.set("category:c1", codec.encode({**blog.get_category("c1"), "post_count": 7}))

    assert blog.update_category_counts() == {"c1": 3, "c2": 1}
    assert blog.get_category("c1")["post_count"] == 3
    assert blog.get_category("c2")["post_count"] == 1

    kv.calls.clear()
    assert blog.update_category_counts() == {"c1": 3, "c2": 1}
    assert [c for c in kv.writes() if c[1].startswith("category:")] == []


def test_post_writes_keep_term_counts_current(blog):
    blog.create_category({"id": "cat-a", "name": "Supercars"})
    blog.create_category({"id": "cat-b", "name": "Grand tourers"})
    blog.create_tag({"id": "t1", "name": "Track"})

    post = blog.create_post(_post(category_ids=["cat-a"], tag_ids=["t1"]))
    assert blog.get_category("cat-a")["post_count"] == 1
    assert blog.get_tag("t1")["post_count"] == 1

    blog.update_post(post["id"], {"category_ids": ["cat-b"], "tag_ids": []})
    assert blog.get_category("cat-a")["post_count"] == 0
    assert blog.get_category("cat-b")["post_count"] == 1
    assert blog.get_tag("t1")["post_count"] == 0

    blog.delete_post(post["id"])
    assert blog.get_category("cat-b")["post_count"] == 0


def test_count_refresh_failure_is_logged_and_repaired(blog, kv, caplog):
    blog.create_category({"id": "c1", "name": "Supercars"})
    kv.fail("set", lambda key: key == "category:c1")
    with caplog.at_level(logging.WARNING):
        post = blog.create_post(_post(category_ids=["c1"]))

    assert blog.get_post(post["id"]) == post
    assert "[CONSISTENCY] category c1 post_count not refreshed" in caplog.text
    assert blog.get_category("c1")["post_count"] == 0

    kv.heal()
    assert blog.update_category_counts() == {"c1": 1}
    assert blog.get_category("c1")["post_count"] == 1


def test_tag_counts(blog):
    blog.create_tag({"id": "t1", "name": "Track"})
    blog.create_post(_post("A", tag_ids=["t1"]))
    blog.create_post(_post("B", tag_ids=["t1"]))
    assert blog.update_tag_counts() == {"t1": 2}
    assert blog.get_tag("t1")["post_count"] == 2


def test_category_created_after_posts_starts_with_current_count(blog):
    blog.create_post(_post("A", category_ids=["c9"]))
    assert blog.create_category({"id": "c9", "name": "Classics"})["post_count"] == 1


def test_category_update_ignores_post_count(blog):
    blog.create_category({"id": "c1", "name": "Supercars"})
    updated = blog.update_category("c1", {"name": "Hypercars", "post_count": 99})
    assert updated["name"] == "Hypercars"
    assert updated["post_count"] == 0


def test_delete_category_detaches_posts(blog, kv):
    blog.create_category({"id": "c1", "name": "Supercars"})
    post = blog.create_post(_post(category_ids=["c1", "c2"]))

    blog.delete_category("c1")

    assert blog.get_category("c1") is None
    assert blog.get_post(post["id"])["category_ids"] == ["c2"]
    assert "posts:category:c1" not in kv.sets
    assert post["id"] in kv.sets["posts:category:c2"]


def test_delete_tag_missing(blog):
    with pytest.raises(NotFound):
        blog.delete_tag("nope")


def test_categories_sorted_by_name(blog):
    blog.create_category({"id": "c1", "name": "supercars"})
    blog.create_category({"id": "c2", "name": "Exotics"})
    assert [c["name"] for c in blog.list_categories()] == ["Exotics", "supercars"]


def test_stats_from_cardinalities(blog):
    blog.create_category({"id": "c1", "name": "Supercars"})
    blog.create_tag({"id": "t1", "name": "Track"})
    blog.create_post(_post("A", category_ids=["c1"], tag_ids=["t1"]))
    blog.create_post(_post("B", status="published", category_ids=["c1"]))
    blog.create_post(_post("C", status="scheduled", scheduled_at="2026-04-01T00:00:00Z"))

    assert blog.get_stats() == {
        "total_posts": 3,
        "posts_by_status": {"draft": 1, "published": 1, "scheduled": 1},
        "posts_by_category": {"c1": 2},
        "posts_by_tag": {"t1": 1},
        "total_categories": 1,
        "total_tags": 1,
    }
