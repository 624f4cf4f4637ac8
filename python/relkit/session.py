"""Async session for database operations with Unit of Work pattern."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from relkit.config import EngineConfig
from relkit.connection import ConnectionPool, QueryEvent, QueryResult
from relkit.errors import InvalidRelationPath, LazyAccessViolation, NotFound
from relkit.loading import EagerLoadPlanner, LoadPlan, as_load_options
from relkit.pivot import PivotManager
from relkit.query import Q, Query
from relkit.transaction import TransactionCoordinator

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.relationships import Relation

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="Base")
R = TypeVar("R")


class AsyncSession:
    """Async database session with Unit of Work pattern.

    Supports multiple usage patterns from simple to advanced:

    Simple (auto-commit):
        >>> async with session.begin() as tx:
        ...     tx.add(User(name="Alice"))
        ...     # commits on exit, rolls back on exception

    Fluent API:
        >>> user = await session.insert(User(name="Alice"))
        >>> users = await session.query(User).filter(name="Alice").get()
        >>> await session.update(user, name="Bob")
        >>> await session.remove(user)

    Retried transaction:
        >>> async def transfer(s):
        ...     await s.table("accounts").where("id", 1).decrement("balance", 10)
        ...     await s.table("accounts").where("id", 2).increment("balance", 10)
        >>> await session.transaction(transfer, attempts=5)

    Traditional:
        >>> session.add(user)
        >>> await session.commit()

    A session is used by one task at a time; share the pool, not the session.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        config: EngineConfig | None = None,
        autoflush: bool = True,
        strict: bool | None = None,
    ) -> None:
        self._pool = pool
        self._config = config or EngineConfig()
        self._coordinator = TransactionCoordinator(pool, attempts=self._config.transaction_attempts)
        self._pending_new: list[Base] = []
        self._pending_delete: list[Base] = []
        self._identity_map: dict[tuple[type, Any], Base] = {}
        self._autoflush = autoflush
        self._dialect = "postgresql" if pool.is_postgres() else "sqlite"
        self.strict = self._config.strict_loading if strict is None else strict

    async def __aenter__(self) -> AsyncSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is not None:
            await self.rollback()

    @property
    def dialect(self) -> str:
        return self._dialect

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def in_transaction(self) -> bool:
        return self._coordinator.active

    def listen(self, callback: Callable[[QueryEvent], None]) -> Callable[[], None]:
        """Subscribe to executed statements; returns an unsubscribe function."""
        return self._pool.listen(callback)

    # ========== Transactions ==========

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[Transaction]:
        """Begin a transaction that commits on success.

        Raises ``TransactionError`` if a transaction is already open.

        Example:
            >>> async with session.begin() as tx:
            ...     tx.add(User(name="Alice"))
            ...     tx.add(Post(title="Hello"))
            ...     # commits automatically on exit
        """
        tx = Transaction(self)
        try:
            async with self._coordinator.scope():
                yield tx
                await self.flush()
        except BaseException:
            self._discard_pending()
            raise

    async def begin_transaction(self) -> None:
        """Open a transaction explicitly; finish it with ``commit()`` or ``rollback()``."""
        await self._coordinator.begin()

    async def transaction(self, work: Callable[[AsyncSession], Awaitable[R]], *, attempts: int | None = None) -> R:
        """Run ``work(session)`` in a transaction, retrying it on deadlock.

        ``work`` may run more than once, so it must not have side effects
        outside the database that cannot be repeated. Returns what ``work``
        returns on the committed attempt.
        """

        async def attempt() -> R:
            try:
                result = await work(self)
                await self.flush()
            except BaseException:
                self._discard_pending()
                raise
            return result

        return await self._coordinator.run(attempt, attempts)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Join the open transaction, or wrap the block in a new one."""
        async with self._coordinator.atomic():
            yield

    async def commit(self) -> None:
        """Flush pending changes and commit the open transaction, if any."""
        await self.flush()
        if self._coordinator.active:
            await self._coordinator.commit()

    async def rollback(self) -> None:
        """Discard pending changes and roll back the open transaction, if any."""
        self._discard_pending()
        if self._coordinator.active:
            await self._coordinator.rollback()

    def _discard_pending(self) -> None:
        self._pending_new.clear()
        self._pending_delete.clear()
        # rolled back rows may still be cached
        self.forget()

    def forget(self, table: str | None = None) -> None:
        """Drop cached entities (all, or those of one table) so ``get`` reads them again."""
        if table is None:
            self._identity_map.clear()
            return
        for key in [k for k in self._identity_map if k[0].__tablename__ == table]:
            del self._identity_map[key]

    # ========== Execution ==========

    async def execute(self, statement: str | Query[Any], params: list[Any] | None = None) -> QueryResult:
        """Execute SQL (or a query builder) and return the rows."""
        if self._autoflush and self._pending_new:
            await self._flush_inserts()
        if isinstance(statement, Query):
            sql, params = statement.to_sql(self._dialect)
        else:
            sql = statement
        async with self._coordinator.connection() as conn:
            return await conn.fetch(sql, params)

    async def execute_statement(self, sql: str, params: list[Any] | None = None) -> int:
        """Execute SQL that returns no rows. Returns the number of rows affected."""
        if self._autoflush and self._pending_new:
            await self._flush_inserts()
        async with self._coordinator.connection() as conn:
            return await conn.execute(sql, params)

    # ========== Queries ==========

    def query(self, model: type[T]) -> Query[T]:
        """Create a fluent query for a model.

        Example:
            >>> users = await session.query(User).filter(age__gt=18).get()
            >>> user = await session.query(User).where("email", "alice@example.com").first()
        """
        return Query(self, model)

    def table(self, name: str) -> Query[Any]:
        """Create a query over a bare table; results are row dictionaries."""
        return Query(self, table=name)

    async def get(self, model: type[T], id: Any, *, include_deleted: bool = False) -> T | None:
        """Get a model by primary key.

        For models with SoftDeleteMixin, soft-deleted records are excluded
        by default. Use include_deleted=True to include them.

        Example:
            >>> user = await session.get(User, 1)
            >>> article = await session.get(Article, 1, include_deleted=True)
        """
        key = (model, id)
        if key in self._identity_map:
            instance = self._identity_map[key]
            if (
                not include_deleted
                and getattr(model, "__soft_delete__", False)
                and getattr(instance, "deleted_at", None) is not None
            ):
                return None
            return instance  # type: ignore[return-value]

        if model.__primary_key__ is None:
            raise ValueError(f"{model.__name__} has no primary key")

        query = self.query(model)
        if include_deleted:
            query.with_trashed()
        instance = await query.find(id)
        if instance is not None:
            self._identity_map[key] = instance
        return instance

    async def get_or_raise(self, model: type[T], id: Any) -> T:
        """Get a model by primary key, raise ``NotFound`` if missing.

        Example:
            >>> user = await session.get_or_raise(User, 1)
        """
        instance = await self.get(model, id)
        if instance is None:
            raise NotFound(model, id)
        return instance

    async def refresh(self, instance: T) -> T:
        """Reload an instance's columns from the database."""
        cls = type(instance)
        row = (await self.table(cls.__tablename__).where(cls.__primary_key__, instance.get_key()).limit(1).get())
        if not row:
            raise NotFound(cls, instance.get_key())
        for col, value in row[0].items():
            col_info = cls.__columns__.get(col)
            if col_info is not None:
                object.__setattr__(instance, col, col_info.cast(value))
        instance.sync_original()
        return instance

    # ========== Writes ==========

    async def insert(self, instance: T) -> T:
        """Insert a model and return it with generated ID.

        Example:
            >>> user = await session.insert(User(name="Alice"))
            >>> print(user.id)  # Has the generated ID
        """
        self.add(instance)
        await self.flush()
        return instance

    async def insert_all(self, instances: list[T]) -> list[T]:
        """Insert multiple models and return them with generated IDs."""
        self.add_all(instances)
        await self.flush()
        return instances

    async def create(self, model: type[T], attributes: Mapping[str, Any], *, allowed: Iterable[str] | None = None) -> T:
        """Mass-assign ``attributes`` onto a new instance and insert it.

        Raises ``MassAssignmentRejected`` for keys outside the allow-list.
        """
        instance = model()
        instance.fill(attributes, allowed=allowed)
        return await self.insert(instance)

    async def first_or_create(self, model: type[T], search: Mapping[str, Any], values: Mapping[str, Any] | None = None) -> T:
        """Return the first row matching ``search``, or insert one."""
        found = await self.query(model).where(dict(search)).first()
        if found is not None:
            return found
        return await self.insert(model(**{**search, **(values or {})}))

    async def update_or_create(self, model: type[T], search: Mapping[str, Any], values: Mapping[str, Any]) -> T:
        """Update the first row matching ``search`` with ``values``, or insert one."""
        found = await self.query(model).where(dict(search)).first()
        if found is None:
            return await self.insert(model(**{**search, **values}))
        return await self.update(found, **values)

    async def save(self, instance: T) -> T:
        """Insert a new instance or write the changed columns of a loaded one."""
        if not instance.exists:
            return await self.insert(instance)

        cls = type(instance)
        dirty = instance.get_dirty()
        if not dirty:
            instance.sync_changes({})
            return instance
        if getattr(cls, "__timestamps__", False):
            dirty.update(instance.touch_timestamps())  # type: ignore[attr-defined]

        pk_col = cls.__primary_key__
        if pk_col is None:
            raise ValueError(f"Cannot update {cls.__name__}: no primary key")
        await self.table(cls.__tablename__).where(pk_col, instance.get_key()).update(dirty)
        instance.sync_changes(dirty)
        instance.sync_original()
        self._identity_map[(cls, instance.get_key())] = instance
        return instance

    async def update(self, instance: T, **values: Any) -> T:
        """Update a model instance with new values.

        Only columns that actually changed are written.

        Example:
            >>> user = await session.update(user, name="Bob", age=30)
        """
        for key, value in values.items():
            setattr(instance, key, value)
        return await self.save(instance)

    async def bulk_update(self, model: type[T], values: dict[str, Any], *conditions: Q, **filters: Any) -> int:
        """Bulk update rows matching conditions.

        Example:
            >>> count = await session.bulk_update(User, {"active": True}, age__gt=18)
            >>> count = await session.bulk_update(
            ...     User, {"status": "archived"}, Q(last_login__lt=cutoff) | Q(banned=True)
            ... )
        """
        return await self.query(model).filter(*conditions, **filters).update(values)

    async def remove(self, instance: T) -> None:
        """Delete a model instance immediately.

        Example:
            >>> await session.remove(user)
        """
        self.delete(instance)
        await self.flush()

    async def remove_all(self, instances: list[T]) -> None:
        for instance in instances:
            self.delete(instance)
        await self.flush()

    # ========== Soft Delete API ==========

    def _require_soft_delete(self, instance: Base) -> None:
        if not getattr(type(instance), "__soft_delete__", False):
            raise TypeError(
                f"{type(instance).__name__} doesn't support soft delete. "
                "Add SoftDeleteMixin to enable soft delete."
            )

    async def soft_delete(self, instance: T) -> T:
        """Soft delete a model instance (sets deleted_at timestamp).

        Example:
            >>> await session.soft_delete(article)
            >>> assert article.is_deleted
        """
        self._require_soft_delete(instance)
        instance.mark_deleted()  # type: ignore[attr-defined]
        return await self.save(instance)

    async def restore(self, instance: T) -> T:
        """Restore a soft-deleted model instance."""
        self._require_soft_delete(instance)
        instance.mark_restored()  # type: ignore[attr-defined]
        return await self.save(instance)

    async def force_delete(self, instance: T) -> None:
        """Permanently delete a model instance, even if it uses SoftDeleteMixin."""
        await self.remove(instance)

    # ========== Upsert API ==========

    async def upsert(
        self,
        instance: T,
        conflict_target: str | list[str],
        update_fields: list[str] | None = None,
        do_nothing: bool = False,
    ) -> T:
        """Insert or update a single model instance (upsert).

        If a record with the same conflict_target value(s) exists, it will be
        updated. Otherwise, a new record will be inserted. The instance is
        refreshed from the stored row.

        Example:
            >>> user = await session.upsert(
            ...     User(email="alice@example.com", name="Alice"),
            ...     conflict_target="email",
            ...     update_fields=["name"],
            ... )
        """
        cls = type(instance)
        self._prepare_insert(instance)
        pk_col = cls.__primary_key__
        values = {
            col: getattr(instance, col)
            for col, info in cls.__columns__.items()
            if not (info.primary_key and instance.get_key() is None)
        }
        unique = [conflict_target] if isinstance(conflict_target, str) else list(conflict_target)
        update = [] if do_nothing else (update_fields or [c for c in values if c != pk_col and c not in unique and c != "created_at"])

        grammar = self.table(cls.__tablename__)._grammar()
        sql, params = grammar.compile_upsert(cls.__tablename__, [values], unique, update, returning=["*"])
        row = (await self.execute(sql, params)).first()
        if row is None and do_nothing:
            row = (await self.table(cls.__tablename__).where({c: values[c] for c in unique}).limit(1).get() or [None])[0]
        if row is not None:
            for col, value in row.items():
                col_info = cls.__columns__.get(col)
                if col_info is not None:
                    object.__setattr__(instance, col, col_info.cast(value))
        self._mark_persisted(instance, values)
        return instance

    async def upsert_all(
        self,
        instances: list[T],
        conflict_target: str | list[str],
        update_fields: list[str] | None = None,
        do_nothing: bool = False,
    ) -> list[T]:
        """Upsert several instances, one statement each."""
        return [await self.upsert(i, conflict_target, update_fields, do_nothing) for i in instances]

    # ========== Relations ==========

    def _relation(self, owner: Base, name: str) -> Relation:
        relation = type(owner).__relationships__.get(name)
        if relation is None:
            raise InvalidRelationPath(type(owner), name, name)
        return relation

    def relation(self, owner: Base, name: str) -> Query[Any]:
        """Query for one owner's related rows, to refine before running.

        Example:
            >>> recent = await session.relation(author, "posts").latest().limit(5).get()
        """
        return self._relation(owner, name).query_for(self, owner)

    async def fetch_relation(self, owner: Base, name: str) -> Any:
        """Return a relation, loading it for this one owner when not yet loaded.

        Raises ``LazyAccessViolation`` under strict loading instead of querying.
        """
        if owner.relation_loaded(name):
            return owner.get_relation(name)
        relation = self._relation(owner, name)
        if self.strict or owner.__dict__.get("_strict"):
            raise LazyAccessViolation(type(owner), name)
        logger.debug("lazy loading %s.%s", type(owner).__name__, name)
        await relation.eager_load(self, [owner], name)
        return owner.get_relation(name)

    def pivot(self, owner: Base, name: str) -> PivotManager:
        """Join-table operations for a many-to-many relation of ``owner``.

        Example:
            >>> await session.pivot(user, "roles").sync([1, 2, 3])
        """
        relation = self._relation(owner, name)
        if not relation.has_pivot:
            raise TypeError(f"{type(owner).__name__}.{name} is not a many-to-many relation")
        return PivotManager(self, owner, relation)  # type: ignore[arg-type]

    async def load(self, entities: Any, *relations: Any) -> Any:
        """Eager load relation paths onto already-fetched entities.

        Example:
            >>> authors = await session.query(Author).get()
            >>> await session.load(authors, "posts.comments", {"books": lambda q: q.latest()})
        """
        await self._load(entities, relations, missing_only=False)
        return entities

    async def load_missing(self, entities: Any, *relations: Any) -> Any:
        """Like :meth:`load`, skipping relations already loaded on each entity."""
        await self._load(entities, relations, missing_only=True)
        return entities

    async def _load(self, entities: Any, relations: tuple[Any, ...], *, missing_only: bool) -> None:
        items = list(entities) if isinstance(entities, (list, tuple)) else [entities]
        items = [e for e in items if e is not None]
        if not items:
            return
        options = as_load_options(relations)
        groups: dict[type, list[Base]] = {}
        for item in items:
            groups.setdefault(type(item), []).append(item)
        for model, group in groups.items():
            plan = LoadPlan.build(model, options)
            await EagerLoadPlanner(self, strict=self.strict).run(plan, group, missing_only=missing_only)

    # ========== Traditional Unit of Work API ==========

    def add(self, instance: Base) -> None:
        """Add a model instance to be inserted on flush/commit."""
        self._pending_new.append(instance)

    def add_all(self, instances: list[Base]) -> None:
        """Add multiple model instances to be inserted on flush/commit."""
        self._pending_new.extend(instances)

    def delete(self, instance: Base) -> None:
        """Mark a model instance for deletion on flush/commit."""
        self._pending_delete.append(instance)

    async def flush(self) -> None:
        """Write pending inserts and deletes without committing."""
        if self._pending_new:
            await self._flush_inserts()
        if self._pending_delete:
            await self._flush_deletes()

    # ========== Internal Methods ==========

    def _prepare_insert(self, instance: Base) -> None:
        cls = type(instance)
        if getattr(cls, "__timestamps__", False):
            instance.touch_timestamps(creating=True)  # type: ignore[attr-defined]
        pk_col = cls.__primary_key__
        if pk_col and instance.get_key() is None:
            col_info = cls.__columns__[pk_col]
            if col_info.key_type in ("uuid", "ulid"):
                setattr(instance, pk_col, col_info.new_key())

    def _mark_persisted(self, instance: Base, written: Mapping[str, Any]) -> None:
        object.__setattr__(instance, "_session", self)
        object.__setattr__(instance, "_exists", True)
        instance.sync_changes(written)
        instance.sync_original()
        key = instance.get_key()
        if key is not None:
            self._identity_map[(type(instance), key)] = instance

    async def _flush_inserts(self) -> None:
        """Insert all pending new objects."""
        pending, self._pending_new = self._pending_new, []
        by_class: dict[type[Base], list[Base]] = {}
        for obj in pending:
            by_class.setdefault(type(obj), []).append(obj)

        for model_cls, instances in by_class.items():
            await self._batch_insert(model_cls, instances)

    async def _batch_insert(self, model_cls: type[Base], instances: list[Base]) -> None:
        """Perform batch insert for a single model class."""
        for instance in instances:
            self._prepare_insert(instance)

        pk_col = model_cls.__primary_key__
        # Database-generated keys are omitted; rows that bring their own key keep it
        groups: dict[bool, list[Base]] = {}
        for instance in instances:
            groups.setdefault(instance.get_key() is None, []).append(instance)

        for generated, group in groups.items():
            columns = [
                col_name
                for col_name, col_info in model_cls.__columns__.items()
                if not (generated and col_info.primary_key)
            ]
            if not columns:
                continue
            # SQLite has a limit of ~999 variables, batch accordingly
            max_params = 900 if self._dialect == "sqlite" else 30000
            batch_size = max(1, max_params // len(columns))
            for start in range(0, len(group), batch_size):
                await self._insert_batch(model_cls, group[start:start + batch_size], columns, pk_col)

    async def _insert_batch(self, model_cls: type[Base], instances: list[Base], columns: list[str], pk_col: str | None) -> None:
        """Insert a single batch of instances."""
        rows = [{col: getattr(instance, col, None) for col in columns} for instance in instances]
        grammar = self.table(model_cls.__tablename__)._grammar()
        # RETURNING works in PostgreSQL and SQLite 3.35+
        sql, params = grammar.compile_insert(model_cls.__tablename__, rows, returning=[pk_col] if pk_col else None)
        result = await self.execute(sql, params)
        returned = result.all()
        for instance, row, written in zip(instances, returned or [None] * len(instances), rows):
            if pk_col and row is not None and instance.get_key() is None:
                object.__setattr__(instance, pk_col, model_cls.__columns__[pk_col].cast(row[pk_col]))
            self._mark_persisted(instance, written)

    async def _flush_deletes(self) -> None:
        """Delete all pending delete objects."""
        pending, self._pending_delete = self._pending_delete, []
        for obj in pending:
            cls = type(obj)
            pk_col = cls.__primary_key__
            if pk_col is None:
                raise ValueError(f"Cannot delete {cls.__name__}: no primary key defined")

            pk_value = obj.get_key()
            if pk_value is None:
                continue

            await self.table(cls.__tablename__).where(pk_col, pk_value).delete()
            object.__setattr__(obj, "_exists", False)
            self._identity_map.pop((cls, pk_value), None)


class Transaction:
    """Transaction context for batch operations.

    Provides a cleaner interface for adding multiple objects in a transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    def add(self, instance: Base) -> Transaction:
        """Add a model to the transaction (chainable)."""
        self._session.add(instance)
        return self

    def add_all(self, instances: list[Base]) -> Transaction:
        """Add multiple models to the transaction (chainable)."""
        self._session.add_all(instances)
        return self

    def delete(self, instance: Base) -> Transaction:
        """Mark a model for deletion (chainable)."""
        self._session.delete(instance)
        return self


# ========== Convenience Functions ==========


def create_session(pool: ConnectionPool, **kwargs: Any) -> AsyncSession:
    """Create a new session from a connection pool.

    Example:
        >>> session = create_session(engine)
    """
    return AsyncSession(pool, **kwargs)


@asynccontextmanager
async def session_context(pool: ConnectionPool, **kwargs: Any) -> AsyncIterator[AsyncSession]:
    """Create a session context that commits on success.

    Example:
        >>> async with session_context(engine) as session:
        ...     await session.insert(User(name="Alice"))
    """
    session = AsyncSession(pool, **kwargs)
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
