"""Offset, simple and cursor pagination."""

from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relkit.query import Query


@dataclass
class Page[T]:
    """One page of results.

    ``total`` and ``last_page`` are ``None`` for simple pagination, which
    skips the COUNT query and only reports ``has_more``.
    """

    items: list[T]
    per_page: int
    current_page: int
    total: int | None = None
    has_more: bool = False

    @property
    def last_page(self) -> int | None:
        if self.total is None:
            return None
        return max(1, math.ceil(self.total / self.per_page))

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [getattr(i, "to_dict", lambda: i)() for i in self.items],
            "per_page": self.per_page,
            "current_page": self.current_page,
            "total": self.total,
            "last_page": self.last_page,
            "has_more": self.has_more,
        }


@dataclass
class CursorPage[T]:
    """A keyset page; pass ``next_cursor`` back to get the following one."""

    items: list[T]
    per_page: int
    next_cursor: str | None = None
    cursor: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


def encode_cursor(values: dict[str, Any]) -> str:
    """Opaque URL-safe cursor for the given key values."""
    raw = json.dumps(values, default=str, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str, *keys: str) -> dict[str, Any]:
    """Decode a cursor, checking that it carries every name in ``keys``."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Malformed pagination cursor: {cursor!r}") from exc
    if not isinstance(data, dict) or any(key not in data for key in keys):
        raise ValueError(f"Malformed pagination cursor: {cursor!r}")
    return data


def _check(per_page: int, page: int = 1) -> None:
    if per_page < 1:
        raise ValueError("per_page must be at least 1")
    if page < 1:
        raise ValueError("page must be at least 1")


async def paginate[T](query: Query[T], per_page: int = 15, page: int = 1) -> Page[T]:
    """Fetch one page and the total number of matching rows (two queries)."""
    _check(per_page, page)
    total = await query.clone().count()
    items = await query.clone().for_page(page, per_page).get() if total else []
    return Page(items, per_page, page, total=total, has_more=page * per_page < total)


async def simple_paginate[T](query: Query[T], per_page: int = 15, page: int = 1) -> Page[T]:
    """Fetch one page, reading one extra row to learn whether more follow."""
    _check(per_page, page)
    items = await query.clone().offset((page - 1) * per_page).limit(per_page + 1).get()
    return Page(items[:per_page], per_page, page, has_more=len(items) > per_page)


async def cursor_paginate[T](
    query: Query[T],
    per_page: int = 15,
    cursor: str | None = None,
    column: str | None = None,
) -> CursorPage[T]:
    """Keyset pagination ascending by ``column`` (the primary key by default).

    Example:
        >>> page = await session.query(Post).cursor_paginate(20)
        >>> following = await session.query(Post).cursor_paginate(20, page.next_cursor)
    """
    _check(per_page)
    column = column or query._key_column()
    name = column.split(".")[-1]

    q = query.clone()._nest_wheres()
    if cursor:
        q.where(column, ">", decode_cursor(cursor, name)[name])
    items = await q.reorder(column).limit(per_page + 1).get()

    next_cursor = None
    if len(items) > per_page:
        items = items[:per_page]
        last = items[-1]
        value = last.get(name) if isinstance(last, dict) else getattr(last, name)
        next_cursor = encode_cursor({name: value})
    return CursorPage(items, per_page, next_cursor=next_cursor, cursor=cursor)
