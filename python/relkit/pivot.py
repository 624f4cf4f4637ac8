"""Join-table maintenance for many-to-many relations."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.query import Query
    from relkit.relationships import BelongsToMany
    from relkit.session import AsyncSession

logger = logging.getLogger(__name__)


class Pivot:
    """Join-table attributes attached to an entity loaded through a many-to-many relation.

    Example:
        >>> user = (await session.query(User).with_("roles").get())[0]
        >>> user.roles[0].pivot.granted_by
    """

    def __init__(self, table: str, attributes: dict[str, Any]) -> None:
        self.table = table
        self.attributes = attributes

    def __getattr__(self, name: str) -> Any:
        try:
            return self.__dict__["attributes"][name]
        except KeyError:
            raise AttributeError(f"Pivot row of {self.table!r} has no column {name!r}") from None

    def __getitem__(self, name: str) -> Any:
        return self.attributes[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.attributes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Pivot):
            return NotImplemented
        return self.table == other.table and self.attributes == other.attributes

    def __repr__(self) -> str:
        return f"<Pivot {self.table} {self.attributes!r}>"


@dataclass
class SyncResult:
    """Keys changed by a pivot sync or toggle."""

    attached: list[Any] = field(default_factory=list)
    detached: list[Any] = field(default_factory=list)
    updated: list[Any] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.attached or self.detached or self.updated)


class PivotManager:
    """Attach, detach and sync the related keys of one owner.

    Every multi-statement operation runs in one transaction (joining the
    session's open transaction if there is one).

    Example:
        >>> roles = session.pivot(user, "roles")
        >>> await roles.attach([1, 2], {"granted_by": "admin"})
        >>> await roles.sync({1: {"granted_by": "root"}, 3: {}})
        SyncResult(attached=[3], detached=[2], updated=[1])
    """

    def __init__(self, session: AsyncSession, owner: Base, relation: BelongsToMany, *, invalidate: bool = True) -> None:
        self._session = session
        self._owner = owner
        self._relation = relation
        self._spec = relation.pivot
        self._invalidate = invalidate
        owner_key = getattr(owner, self._spec.parent_key)
        if owner_key is None:
            raise ValueError(f"{type(owner).__name__} must be saved before its {relation.name} can be changed")
        self._owner_key = owner_key

    @property
    def table(self) -> str:
        return self._spec.table

    def _base(self) -> Query[Any]:
        spec = self._spec
        query = self._session.table(spec.table).where(spec.foreign_pivot_key, self._owner_key)
        if spec.morph_type:
            query.where(spec.morph_type, spec.morph_class)
        return query

    def _cast_key(self, key: Any) -> Any:
        related = self._relation.related_model
        column = related.__columns__.get(self._spec.related_key) if related is not None else None
        return column.cast(key) if column is not None else key

    def _key_of(self, item: Any) -> Any:
        if hasattr(item, "__columns__"):
            item = getattr(item, self._spec.related_key)
        return self._cast_key(item)

    def _normalize(self, keys: Any, attributes: Mapping[str, Any] | None = None) -> dict[Any, dict[str, Any]]:
        """Map related keys to their pivot attributes, rejecting duplicates."""
        shared = dict(attributes or {})
        if isinstance(keys, Mapping):
            pairs: Iterable[tuple[Any, Any]] = keys.items()
        elif isinstance(keys, (str, bytes)) or hasattr(keys, "__columns__") or not isinstance(keys, Iterable):
            pairs = [(keys, None)]
        else:
            pairs = [(k, None) for k in keys]

        normalized: dict[Any, dict[str, Any]] = {}
        for item, extra in pairs:
            key = self._key_of(item)
            if key in normalized:
                raise ValueError(f"Duplicate key {key!r} in {self._relation.name} pivot operation")
            normalized[key] = {**shared, **(extra or {})}
        return normalized

    def _record(self, key: Any, attributes: Mapping[str, Any], now: datetime) -> dict[str, Any]:
        spec = self._spec
        record = {spec.foreign_pivot_key: self._owner_key, spec.related_pivot_key: key}
        if spec.morph_type:
            record[spec.morph_type] = spec.morph_class
        record.update(attributes)
        if spec.timestamps:
            record.setdefault("created_at", now)
            record.setdefault("updated_at", now)
        return record

    def _changed(self) -> None:
        if self._invalidate and self._relation.name:
            self._owner.unset_relation(self._relation.name)

    async def attached(self) -> dict[Any, dict[str, Any]]:
        """Currently attached related keys with their extra pivot columns."""
        spec = self._spec
        extra = [c for c in spec.selected_columns if c not in (spec.foreign_pivot_key, spec.related_pivot_key, spec.morph_type)]
        rows = await self._base().select(spec.related_pivot_key, *extra).get()
        return {self._cast_key(row[spec.related_pivot_key]): {c: row[c] for c in extra} for row in rows}

    async def attached_keys(self) -> list[Any]:
        return list(await self.attached())

    async def attach(self, keys: Any, attributes: Mapping[str, Any] | None = None, *, upsert: bool = False) -> int:
        """Insert join rows for ``keys``.

        ``keys`` is a key, a model, a list of either, or a ``{key: attributes}``
        mapping. With ``upsert=True`` rows that already exist are updated
        instead of raising ``ConstraintViolation``.
        """
        normalized = self._normalize(keys, attributes)
        if not normalized:
            return 0
        count = await self._insert(normalized, upsert=upsert)
        self._changed()
        return count

    async def _insert(self, normalized: Mapping[Any, Mapping[str, Any]], *, upsert: bool = False) -> int:
        spec = self._spec
        now = datetime.now(UTC)
        count = 0
        # Rows with different extra columns cannot share one INSERT
        batches: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for key, attrs in normalized.items():
            record = self._record(key, attrs, now)
            batches.setdefault(tuple(record), []).append(record)

        async with self._session.atomic():
            for columns, records in batches.items():
                query = self._session.table(spec.table)
                if upsert:
                    unique = [spec.foreign_pivot_key, spec.related_pivot_key]
                    if spec.morph_type:
                        unique.append(spec.morph_type)
                    update = [c for c in columns if c not in unique and c != "created_at"]
                    count += await query.upsert(records, unique, update)
                else:
                    count += await query.insert(records)
        return count

    async def detach(self, keys: Any = None) -> int:
        """Delete join rows for ``keys``, or every join row of the owner when omitted."""
        query = self._base()
        if keys is not None:
            normalized = self._normalize(keys)
            if not normalized:
                return 0
            query.where_in(self._spec.related_pivot_key, list(normalized))
        count = await query.delete()
        self._changed()
        return count

    async def update_existing_pivot(self, key: Any, attributes: Mapping[str, Any]) -> int:
        """Update extra columns on one existing join row."""
        values = dict(attributes)
        if self._spec.timestamps:
            values.setdefault("updated_at", datetime.now(UTC))
        if not values:
            return 0
        count = await self._base().where(self._spec.related_pivot_key, self._key_of(key)).update(values)
        self._changed()
        return count

    async def sync(self, keys: Any, *, detaching: bool = True) -> SyncResult:
        """Make the attached set equal to ``keys``.

        Missing keys are attached, surplus keys detached (unless
        ``detaching=False``) and keys whose given pivot attributes differ are
        updated. Running the same sync twice changes nothing the second time.
        """
        desired = self._normalize(keys)
        result = SyncResult()
        async with self._session.atomic():
            current = await self.attached()

            if detaching:
                result.detached = [k for k in current if k not in desired]
            to_attach = {k: a for k, a in desired.items() if k not in current}
            result.attached = list(to_attach)
            to_update = {
                k: a for k, a in desired.items()
                if k in current and any(current[k].get(c) != v for c, v in a.items())
            }
            result.updated = list(to_update)

            if result.detached:
                await self._base().where_in(self._spec.related_pivot_key, result.detached).delete()
            if to_attach:
                await self._insert(to_attach)
            for key, attrs in to_update.items():
                values = dict(attrs)
                if self._spec.timestamps:
                    values.setdefault("updated_at", datetime.now(UTC))
                await self._base().where(self._spec.related_pivot_key, key).update(values)

        if result.changed:
            logger.debug(
                "synced %s.%s: attached=%r detached=%r updated=%r",
                type(self._owner).__name__, self._relation.name, result.attached, result.detached, result.updated,
            )
            self._changed()
        return result

    async def sync_without_detaching(self, keys: Any) -> SyncResult:
        return await self.sync(keys, detaching=False)

    async def toggle(self, keys: Any, attributes: Mapping[str, Any] | None = None) -> SyncResult:
        """Detach the given keys that are attached and attach the rest."""
        requested = self._normalize(keys, attributes)
        result = SyncResult()
        async with self._session.atomic():
            current = await self.attached()
            result.detached = [k for k in requested if k in current]
            to_attach = {k: a for k, a in requested.items() if k not in current}
            result.attached = list(to_attach)
            if result.detached:
                await self._base().where_in(self._spec.related_pivot_key, result.detached).delete()
            if to_attach:
                await self._insert(to_attach)
        if result.changed:
            self._changed()
        return result


class ManyToManyCollection(list):
    """Proxy collection for many-to-many relationships.

    Provides async add/remove/clear operations that modify the junction table.

    Example:
        >>> await user.roles.add(admin_role)
        >>> await user.roles.add(editor_role, viewer_role)
        >>> await user.roles.remove(viewer_role)
        >>> await user.roles.clear()
    """

    def __init__(self, owner: Base, relation_name: str, session: AsyncSession, initial: list | None = None) -> None:
        super().__init__(initial or [])
        self._owner = owner
        self._relation_name = relation_name
        self._session = session

    def _manager(self) -> PivotManager:
        relation = type(self._owner).__relationships__[self._relation_name]
        return PivotManager(self._session, self._owner, relation, invalidate=False)  # type: ignore[arg-type]

    async def add(self, *items: Base, **attributes: Any) -> None:
        """Add items to the relationship (inserts into junction table).

        This is idempotent - adding an already-associated item is a no-op.
        """
        if not items:
            return
        manager = self._manager()
        current = await manager.attached()
        new = [item for item in items if manager._key_of(item) not in current]
        if new:
            await manager.attach(new, attributes)
        for item in items:
            if item not in self:
                self.append(item)

    async def remove(self, *items: Base) -> None:
        """Remove items from the relationship (deletes from junction table).

        This is safe to call even if the item isn't associated (no-op).
        """
        if not items:
            return
        await self._manager().detach(list(items))
        for item in items:
            if item in self:
                list.remove(self, item)

    async def clear(self) -> None:
        """Remove all items from the relationship."""
        await self._manager().detach()
        list.clear(self)
