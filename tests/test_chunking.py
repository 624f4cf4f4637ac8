"""Tests for chunked iteration, lazy streams and pagination."""

from __future__ import annotations

import base64

import pytest

from relkit import AsyncSession, Base, EngineConfig, Mapped, mapped_column


class ChunkItem(Base):
    __tablename__ = "chunk_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    n: Mapped[int]
    processed: Mapped[bool] = mapped_column(default=False)


@pytest.fixture
async def pool(sqlite_pool):
    await sqlite_pool.execute(
        """
        CREATE TABLE chunk_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            n INTEGER NOT NULL,
            processed INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    for n in range(1, 11):
        await sqlite_pool.execute("INSERT INTO chunk_items (n) VALUES (?)", [n])
    return sqlite_pool


@pytest.fixture
async def session(pool):
    return AsyncSession(pool)


class TestChunk:
    async def test_pages_cover_all_rows(self, session):
        pages = []

        finished = await session.query(ChunkItem).chunk(3, lambda page: pages.append([i.n for i in page]))

        assert finished is True
        assert pages == [[1, 2, 3], [4, 5, 6], [7, 8, 9], [10]]

    async def test_async_callback(self, session):
        seen = []

        async def collect(page):
            seen.extend(i.n for i in page)

        await session.query(ChunkItem).where("n", ">", 5).chunk(2, collect)

        assert seen == [6, 7, 8, 9, 10]

    async def test_callback_false_stops(self, session, query_log):
        log = query_log(session.pool)
        pages = []

        def first_only(page):
            pages.append(page)
            return False

        finished = await session.query(ChunkItem).chunk(4, first_only)

        assert finished is False
        assert len(pages) == 1
        assert len(log.selects) == 1

    async def test_respects_explicit_order(self, session):
        pages = []

        await session.query(ChunkItem).order_by("-n").chunk(4, lambda page: pages.append([i.n for i in page]))

        assert pages[0] == [10, 9, 8, 7]

    async def test_offset_mode_skips_rows_removed_by_callback(self, session):
        seen = []

        async def mark(page):
            seen.extend(i.n for i in page)
            await session.query(ChunkItem).where_in("id", [i.id for i in page]).update(processed=True)

        await session.query(ChunkItem).where("processed", False).chunk(3, mark)

        assert len(seen) < 10

    async def test_invalid_size(self, session):
        with pytest.raises(ValueError):
            await session.query(ChunkItem).chunk(0, lambda page: None)


class TestChunkById:
    async def test_every_row_once_when_callback_mutates(self, session):
        seen = []

        async def mark(page):
            seen.extend(i.n for i in page)
            await session.query(ChunkItem).where_in("id", [i.id for i in page]).update(processed=True)

        finished = await session.query(ChunkItem).where("processed", False).chunk_by_id(3, mark)

        assert finished is True
        assert seen == list(range(1, 11))
        assert not await session.query(ChunkItem).where("processed", False).exists()

    async def test_every_row_once_when_callback_deletes(self, session):
        seen = []

        async def purge(page):
            seen.extend(i.n for i in page)
            await session.query(ChunkItem).where_in("id", [i.id for i in page]).delete()

        await session.query(ChunkItem).chunk_by_id(4, purge)

        assert seen == list(range(1, 11))
        assert await session.query(ChunkItem).count() == 0

    async def test_seed_does_not_escape_or_conditions(self, session, query_log):
        log = query_log(session.pool)
        seen = []

        await session.query(ChunkItem).where("n", "<", 3).or_where("n", ">", 7).chunk_by_id(
            2, lambda page: seen.extend(i.n for i in page)
        )

        assert seen == [1, 2, 8, 9, 10]
        assert 'WHERE ("n" < ? OR "n" > ?) AND "chunk_items"."id" > ?' in log.selects[1].sql

    async def test_seed_does_not_escape_raw_or(self, session, query_log):
        log = query_log(session.pool)
        seen = []

        await session.query(ChunkItem).where_raw("n < ? OR n > ?", [3, 7]).chunk_by_id(
            2, lambda page: seen.extend(i.n for i in page)
        )

        assert seen == [1, 2, 8, 9, 10]
        assert 'WHERE (n < ? OR n > ?) AND "chunk_items"."id" > ?' in log.selects[1].sql

    async def test_qualified_column_with_alias(self, session):
        seen = []

        await session.table("chunk_items").select("chunk_items.id as item_id", "n").chunk_by_id(
            4, lambda page: seen.extend(row["n"] for row in page), column="chunk_items.id", alias="item_id"
        )

        assert seen == list(range(1, 11))

    async def test_missing_alias_column(self, session):
        with pytest.raises(RuntimeError, match="missing"):
            await session.table("chunk_items").select("n").chunk_by_id(2, lambda page: None)

    async def test_early_stop(self, session):
        pages = []

        def stop_after_two(page):
            pages.append(page)
            return len(pages) < 2

        assert await session.query(ChunkItem).chunk_by_id(3, stop_after_two) is False
        assert len(pages) == 2


class TestLazy:
    async def test_lazy_yields_entities_in_key_order(self, session):
        values = [item.n async for item in session.query(ChunkItem).lazy(4)]

        assert values == list(range(1, 11))

    async def test_break_stops_fetching(self, session, query_log):
        log = query_log(session.pool)
        taken = []

        async for item in session.query(ChunkItem).lazy(3):
            taken.append(item.n)
            if len(taken) == 2:
                break

        assert taken == [1, 2]
        assert len(log.selects) == 1

    async def test_lazy_by_id(self, session):
        values = [item.n async for item in session.query(ChunkItem).where("n", ">", 4).lazy_by_id(2)]

        assert values == [5, 6, 7, 8, 9, 10]

    async def test_pages(self, session):
        sizes = [len(page) async for page in session.query(ChunkItem).lazy(4).pages()]

        assert sizes == [4, 4, 2]

    async def test_query_iteration_uses_configured_chunk_size(self, pool, query_log):
        session = AsyncSession(pool, config=EngineConfig(chunk_size=5))
        log = query_log(pool)

        values = [item.n async for item in session.query(ChunkItem)]

        assert values == list(range(1, 11))
        # two full pages plus the empty probe
        assert len(log.selects) == 3

    async def test_each(self, session):
        seen = []

        def until_four(item):
            seen.append(item.n)
            return item.n < 4

        assert await session.query(ChunkItem).each(until_four, size=3) is False
        assert seen == [1, 2, 3, 4]

    async def test_invalid_size(self, session):
        with pytest.raises(ValueError):
            session.query(ChunkItem).lazy(0)


class TestPagination:
    async def test_paginate(self, session):
        page = await session.query(ChunkItem).paginate(per_page=4, page=3)

        assert [i.n for i in page] == [9, 10]
        assert page.total == 10
        assert page.last_page == 3
        assert page.has_more is False

        first = await session.query(ChunkItem).paginate(per_page=4)
        assert first.has_more is True
        assert first.to_dict()["items"][0]["n"] == 1

    async def test_paginate_empty(self, session, query_log):
        log = query_log(session.pool)

        page = await session.query(ChunkItem).where("n", ">", 100).paginate()

        assert page.items == []
        assert page.total == 0
        assert page.last_page == 1
        assert len(log.selects) == 1

    async def test_simple_paginate(self, session):
        page = await session.query(ChunkItem).order_by("n").simple_paginate(per_page=5, page=2)

        assert [i.n for i in page] == [6, 7, 8, 9, 10]
        assert page.total is None
        assert page.has_more is False

        assert (await session.query(ChunkItem).order_by("n").simple_paginate(per_page=5)).has_more

    async def test_cursor_paginate_walks_all_rows(self, session):
        seen = []
        cursor = None
        while True:
            page = await session.query(ChunkItem).cursor_paginate(4, cursor)
            seen.extend(i.n for i in page)
            if not page.has_more:
                break
            cursor = page.next_cursor

        assert seen == list(range(1, 11))

    async def test_malformed_cursor(self, session):
        with pytest.raises(ValueError, match="Malformed"):
            await session.query(ChunkItem).cursor_paginate(4, "!!not-a-cursor")

    async def test_cursor_without_key(self, session):
        cursor = base64.urlsafe_b64encode(b'{"x":1}').decode()

        with pytest.raises(ValueError, match="Malformed"):
            await session.query(ChunkItem).cursor_paginate(4, cursor)

    async def test_invalid_page(self, session):
        with pytest.raises(ValueError):
            await session.query(ChunkItem).paginate(per_page=0)
