"""Page-at-a-time iteration over query results."""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relkit.query import Query

logger = logging.getLogger(__name__)


class ChunkCursor[T]:
    """Walks a query in pages of ``size`` rows.

    Offset mode re-runs the query with ``LIMIT/OFFSET`` (ordered by the
    primary key when the query has no ordering). Keyed mode (``by_key=True``)
    asks for ``key > last_seen ORDER BY key LIMIT size`` each time, so rows
    deleted or updated by the consumer never shift later pages: every row that
    existed at the start and still matches is produced exactly once.

    Example:
        >>> async for page in session.query(User).lazy_by_id(500).pages():
        ...     await reindex(page)
        >>> async for user in session.query(User).lazy():
        ...     print(user.name)
    """

    def __init__(
        self,
        query: Query[T],
        size: int,
        *,
        by_key: bool = False,
        column: str | None = None,
        alias: str | None = None,
    ) -> None:
        if size < 1:
            raise ValueError("chunk size must be at least 1")
        self._query = query
        self._size = size
        self._by_key = by_key
        self._column = column
        self._alias = alias

    async def pages(self) -> AsyncIterator[list[T]]:
        """Yield lists of at most ``size`` results until the query is exhausted."""
        if self._by_key:
            async for page in self._keyed_pages():
                yield page
            return

        base = self._query.clone()
        if not base._orders:
            base.order_by(base._key_column())
        page_number = 1
        while True:
            page = await base.clone().for_page(page_number, self._size).get()
            if not page:
                return
            yield page
            if len(page) < self._size:
                return
            page_number += 1

    async def _keyed_pages(self) -> AsyncIterator[list[T]]:
        column = self._column or self._query._key_column()
        alias = self._alias or column.split(".")[-1]
        last: Any = None
        while True:
            query = self._query.clone()._nest_wheres()
            if last is not None:
                query.where(column, ">", last)
            query.reorder(column)
            query._offset = None
            query.limit(self._size)

            page = await query.get()
            if not page:
                return
            yield page
            if len(page) < self._size:
                return
            last = _value_of(page[-1], alias)
            if last is None:
                raise RuntimeError(f"chunk_by_id column {alias!r} is missing from the results")

    async def each_page(self, callback: Callable[[list[T]], Awaitable[Any] | Any]) -> bool:
        """Pass every page to ``callback``; a ``False`` result stops iteration.

        Returns ``False`` when stopped early, ``True`` otherwise.
        """
        async with aclosing(self.pages()) as pages:
            async for page in pages:
                result = callback(page)
                if inspect.isawaitable(result):
                    result = await result
                if result is False:
                    logger.debug("chunk callback stopped iteration")
                    return False
        return True

    async def _items(self) -> AsyncIterator[T]:
        async with aclosing(self.pages()) as pages:
            async for page in pages:
                for item in page:
                    yield item

    def __aiter__(self) -> AsyncIterator[T]:
        return self._items()


def _value_of(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)
