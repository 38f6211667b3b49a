from datetime import datetime, timedelta, timezone

import pytest

from feedsync.models import NormalizedItem
from feedsync.storage import (
    count_items,
    find_item,
    list_items,
    prune_items,
    set_item_flag,
    upsert_item,
)

from helpers import add_source


def _item(external_id, published_at=None, **overrides):
    data = {
        "provider_type": "newsdata",
        "external_id": external_id,
        "url": f"https://news.example.com/{external_id or 'no-id'}",
        "title": f"Headline {external_id}",
        "published_at": published_at,
        "tags": ["markets"],
    }
    data.update(overrides)
    return NormalizedItem(**data)


def test_upsert_is_idempotent(conn):
    source_id = add_source(conn, None)
    assert upsert_item(conn, source_id, _item("a1"), "2025-03-01T00:00:00+00:00") is True
    assert upsert_item(conn, source_id, _item("a1", title="Updated"), "2025-03-02T00:00:00+00:00") is False
    conn.commit()

    assert count_items(conn, source_id) == 1
    stored = find_item(conn, "newsdata", "a1", "")
    assert stored.title == "Updated"
    assert stored.fetched_at == "2025-03-02T00:00:00+00:00"
    assert stored.tags == ["markets"]


def test_upsert_falls_back_to_url_without_external_id(conn):
    source_id = add_source(conn, None)
    first = _item(None, url="https://news.example.com/story")
    assert upsert_item(conn, source_id, first, "2025-03-01T00:00:00+00:00") is True
    assert upsert_item(conn, source_id, first, "2025-03-01T01:00:00+00:00") is False
    conn.commit()
    assert count_items(conn, source_id) == 1


def test_upsert_keeps_user_flags(conn):
    source_id = add_source(conn, None)
    upsert_item(conn, source_id, _item("a1"), "2025-03-01T00:00:00+00:00")
    conn.commit()
    item_id = find_item(conn, "newsdata", "a1", "").id
    set_item_flag(conn, item_id, "starred", True)

    upsert_item(conn, source_id, _item("a1", title="Refreshed"), "2025-03-02T00:00:00+00:00")
    conn.commit()
    stored = find_item(conn, "newsdata", "a1", "")
    assert stored.is_starred is True
    assert stored.title == "Refreshed"


def test_prune_deletes_oldest_unprotected_first(conn):
    source_id = add_source(conn, None)
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for index in range(105):
        published = (base + timedelta(minutes=index)).isoformat()
        upsert_item(conn, source_id, _item(f"a{index:03d}", published), published)
    conn.commit()

    for index in range(10):
        item_id = find_item(conn, "newsdata", f"a{index:03d}", "").id
        set_item_flag(conn, item_id, "starred", True)

    assert prune_items(conn, source_id, max_keep=100) == 5
    assert count_items(conn, source_id) == 100

    for index in range(10):
        assert find_item(conn, "newsdata", f"a{index:03d}", "") is not None
    for index in range(10, 15):
        assert find_item(conn, "newsdata", f"a{index:03d}", "") is None
    assert find_item(conn, "newsdata", "a015", "") is not None


def test_prune_never_removes_protected_items(conn):
    source_id = add_source(conn, None)
    for index, flag in enumerate(["pinned", "starred", "dismissed", "linked"]):
        published = f"2025-01-0{index + 1}T00:00:00+00:00"
        upsert_item(conn, source_id, _item(f"p{index}", published), published)
        conn.commit()
        set_item_flag(conn, find_item(conn, "newsdata", f"p{index}", "").id, flag, True)

    assert prune_items(conn, source_id, max_keep=1) == 0
    assert count_items(conn, source_id) == 4


def test_prune_uses_fetched_at_when_published_missing(conn):
    source_id = add_source(conn, None)
    upsert_item(conn, source_id, _item("old", None), "2025-01-01T00:00:00+00:00")
    upsert_item(conn, source_id, _item("new", None), "2025-02-01T00:00:00+00:00")
    conn.commit()

    assert prune_items(conn, source_id, max_keep=1) == 1
    assert find_item(conn, "newsdata", "old", "") is None
    assert find_item(conn, "newsdata", "new", "") is not None


def test_prune_is_scoped_to_source(conn):
    first = add_source(conn, None, name="First")
    second = add_source(conn, None, name="Second")
    for index in range(3):
        upsert_item(conn, first, _item(f"f{index}"), f"2025-01-0{index + 1}T00:00:00+00:00")
        upsert_item(conn, second, _item(f"s{index}"), f"2025-01-0{index + 1}T00:00:00+00:00")
    conn.commit()

    assert prune_items(conn, first, max_keep=1) == 2
    assert count_items(conn, first) == 1
    assert count_items(conn, second) == 3


def test_list_items_newest_first(conn):
    source_id = add_source(conn, None)
    upsert_item(conn, source_id, _item("old", "2025-01-01T00:00:00+00:00"), "2025-03-01T00:00:00+00:00")
    upsert_item(conn, source_id, _item("new", "2025-02-01T00:00:00+00:00"), "2025-03-01T00:00:00+00:00")
    conn.commit()
    assert [item.external_id for item in list_items(conn, source_id)] == ["new", "old"]


def test_set_item_flag_rejects_unknown_flag(conn):
    with pytest.raises(ValueError):
        set_item_flag(conn, 1, "archived", True)
