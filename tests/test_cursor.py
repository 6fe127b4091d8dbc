"""Tests for cursor encoding and keyset pagination."""

import base64
import json

import pytest

from ratecache.core.cache import InMemoryCache
from ratecache.services.query_cache import (
    Cursor,
    QueryCache,
    decode_cursor,
    encode_cursor,
    select_page,
)

POSTS = [
    {"id": 1, "date": "2024-01-01", "title": "first"},
    {"id": 2, "date": "2024-01-01", "title": "second"},
    {"id": 3, "date": "2024-01-02", "title": "third"},
    {"id": 4, "date": "2024-01-03", "title": "fourth"},
    {"id": 5, "date": "2024-01-03", "title": "fifth"},
]


def raw_cursor(data) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode()


class TestCursorEncoding:

    @pytest.mark.parametrize(
        "order_value, item_id",
        [
            ("2024-01-03T10:00:00", 42),
            (1700000000, "post-7"),
            (3.25, 0),
            ("Ünïcødé ✓", "id/with+chars"),
            (-1, -1),
        ],
    )
    def test_round_trip(self, order_value, item_id):
        cursor = encode_cursor(order_value, item_id)

        assert decode_cursor(cursor) == Cursor(order_value, item_id)

    def test_cursor_is_url_safe(self):
        cursor = encode_cursor("?>?>?>", "~~~")
        assert "+" not in cursor and "/" not in cursor

    def test_unpadded_cursor_accepted(self):
        cursor = encode_cursor("2024-01-01", 1).rstrip("=")
        assert decode_cursor(cursor) == Cursor("2024-01-01", 1)

    @pytest.mark.parametrize(
        "cursor",
        [
            None,
            "",
            "%%%not-base64%%%",
            base64.urlsafe_b64encode(b"not json").decode(),
            base64.urlsafe_b64encode(b"\xff\xfe").decode(),
            raw_cursor([1, 2]),
            raw_cursor({"v": "2024-01-01"}),
            raw_cursor({"id": 1}),
            raw_cursor({"v": True, "id": 1}),
            raw_cursor({"v": {"nested": 1}, "id": 1}),
            raw_cursor({"v": "x", "id": 1.5}),
        ],
    )
    def test_malformed_cursor_is_no_cursor(self, cursor):
        assert decode_cursor(cursor) is None


class TestSelectPage:

    def test_first_page_descending(self):
        page = select_page(POSTS, None, 2)
        assert [p["id"] for p in page] == [5, 4]

    def test_id_breaks_ties(self):
        page = select_page(POSTS, {"op": "<", "value": "2024-01-03", "id": 5}, 2)
        assert [p["id"] for p in page] == [4, 3]

    def test_previous_page(self):
        page = select_page(POSTS, {"op": ">", "value": "2024-01-01", "id": 1}, 2)
        assert [p["id"] for p in page] == [3, 2]


class TestFetchPage:

    @pytest.fixture
    def cache(self, clock):
        return QueryCache(
            InMemoryCache(clock=clock),
            fast=InMemoryCache(clock=clock),
            clock=clock,
        )

    @staticmethod
    async def list_posts(query):
        return {"items": select_page(POSTS, query.get("cursor"), query["limit"])}

    @pytest.mark.asyncio
    async def test_five_items_three_pages(self, cache):
        seen = []
        flags = []
        cursor = None
        for _ in range(3):
            page = await cache.fetch_page({"type": "post"}, self.list_posts, cursor=cursor, limit=2)
            seen.extend(item["id"] for item in page.items)
            flags.append(page.has_next)
            cursor = page.next_cursor

        assert flags == [True, True, False]
        assert seen == [5, 4, 3, 2, 1]
        assert len(set(seen)) == 5

    @pytest.mark.asyncio
    async def test_has_previous_only_with_cursor(self, cache):
        first = await cache.fetch_page({"type": "post"}, self.list_posts, limit=2)
        second = await cache.fetch_page(
            {"type": "post"}, self.list_posts, cursor=first.next_cursor, limit=2
        )

        assert first.has_previous is False
        assert second.has_previous is True

    @pytest.mark.asyncio
    async def test_prev_direction_returns_to_earlier_page(self, cache):
        first = await cache.fetch_page({"type": "post"}, self.list_posts, limit=2)
        second = await cache.fetch_page(
            {"type": "post"}, self.list_posts, cursor=first.next_cursor, limit=2
        )

        back = await cache.fetch_page(
            {"type": "post"},
            self.list_posts,
            cursor=second.prev_cursor,
            limit=2,
            direction="prev",
        )

        assert [p["id"] for p in back.items] == [p["id"] for p in first.items]

    @pytest.mark.asyncio
    async def test_malformed_cursor_starts_from_first_page(self, cache):
        page = await cache.fetch_page(
            {"type": "post"}, self.list_posts, cursor="garbage!!", limit=2
        )

        assert [p["id"] for p in page.items] == [5, 4]
        assert page.has_previous is False

    @pytest.mark.asyncio
    async def test_pages_are_cached(self, cache):
        await cache.fetch_page({"type": "post"}, self.list_posts, limit=2)
        page = await cache.fetch_page({"type": "post"}, self.list_posts, limit=2)

        assert page.from_cache is True

    @pytest.mark.asyncio
    async def test_cursor_survives_expired_page(self, cache, clock):
        first = await cache.fetch_page({"type": "post"}, self.list_posts, limit=2, ttl=10)
        clock.advance(60)

        second = await cache.fetch_page(
            {"type": "post"}, self.list_posts, cursor=first.next_cursor, limit=2
        )

        assert [p["id"] for p in second.items] == [3, 2]

    @pytest.mark.asyncio
    async def test_empty_page(self, cache):
        async def nothing(query):
            return []

        page = await cache.fetch_page({"type": "draft"}, nothing, limit=2)

        assert page.items == []
        assert page.has_next is False
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, cache):
        with pytest.raises(ValueError):
            await cache.fetch_page({}, self.list_posts, direction="sideways")
        with pytest.raises(ValueError):
            await cache.fetch_page({}, self.list_posts, limit=0)

    def test_page_to_dict(self):
        from ratecache.services.query_cache import Page

        page = Page(items=[1], has_next=False, has_previous=True, next_cursor="n", prev_cursor="p")

        assert page.to_dict()["pagination"] == {
            "has_next": False,
            "has_previous": True,
            "next_cursor": "n",
            "prev_cursor": "p",
        }
