"""Fluent query builder.

Example:
    >>> posts = await (
    ...     session.query(Post)
    ...     .where("published", True)
    ...     .where(lambda q: q.where("views", ">", 100).or_where("featured", True))
    ...     .order_by("created_at", "desc")
    ...     .with_("author", "comments.author")
    ...     .limit(20)
    ...     .get()
    ... )
"""

from __future__ import annotations

import copy
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from relkit.clauses import (
    MISSING,
    Basic,
    Between,
    ColumnCompare,
    Exists,
    Expression,
    In,
    JoinClause,
    Nested,
    Null,
    Raw,
    Where,
    has_or,
    normalize_operator,
)
from relkit.errors import NotFound
from relkit.grammar import Grammar, grammar_for

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.chunking import ChunkCursor
    from relkit.loading import IdentityMap, LoadPlan
    from relkit.pagination import CursorPage, Page
    from relkit.relationships import LoadOption
    from relkit.session import AsyncSession

T = TypeVar("T", bound="Base")


# ========== Q Objects for Complex Conditions ==========


@dataclass
class Q:
    """Django-style Q object for complex query conditions.

    Supports AND (&) and OR (|) operations for building complex WHERE clauses.

    Example:
        >>> # OR condition
        >>> query.filter(Q(age__gt=18) | Q(vip=True))

        >>> # AND condition (explicit)
        >>> query.filter(Q(age__gt=18) & Q(active=True))

        >>> # Combined
        >>> query.filter((Q(age__gt=18) | Q(vip=True)) & Q(active=True))

        >>> # Negation
        >>> query.filter(~Q(banned=True))
    """

    _filters: list[tuple[str, str, Any]] = field(default_factory=list)
    _children: list[tuple[str, Q]] = field(default_factory=list)  # ("and"/"or", child_q)
    _negated: bool = False

    def __init__(self, **kwargs: Any) -> None:
        self._filters = []
        self._children = []
        self._negated = False

        for key, value in kwargs.items():
            col, op = _parse_filter_key(key)
            self._filters.append((col, op, value))

    def __or__(self, other: Q) -> Q:
        """Combine with OR."""
        result = Q()
        result._children = [("or", self), ("or", other)]
        return result

    def __and__(self, other: Q) -> Q:
        """Combine with AND."""
        result = Q()
        result._children = [("and", self), ("and", other)]
        return result

    def __invert__(self) -> Q:
        """Negate the condition."""
        result = Q()
        result._filters = self._filters.copy()
        result._children = self._children.copy()
        result._negated = not self._negated
        return result

    def to_node(self) -> Nested:
        """Convert to a parenthesized predicate group."""
        if self._children:
            items = tuple(Where(join, child.to_node()) for join, child in self._children)
        else:
            items = tuple(Where("and", lookup(col, op, value)) for col, op, value in self._filters)
        return Nested(items, self._negated)


_LOOKUPS = {
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "ne": "!=",
    "like": "like",
    "ilike": "ilike",
    "in": "in",
    "notin": "notin",
    "range": "range",
    "isnull": "isnull",
    "isnotnull": "isnotnull",
    "contains": "like",
    "icontains": "ilike",
    "startswith": "like",
    "istartswith": "ilike",
    "endswith": "like",
    "iendswith": "ilike",
}


def _parse_filter_key(key: str) -> tuple[str, str]:
    """Parse a Django-style filter key into column and lookup name.

    ``age__gt`` gives ``("age", "gt")``; a ``__`` path without a known lookup
    (``metadata__tier``) addresses a key inside a JSON column.
    """
    if "__" in key:
        column, suffix = key.rsplit("__", 1)
        if suffix in _LOOKUPS:
            return column.replace("__", "->"), suffix
    return key.replace("__", "->"), "eq"


def lookup(column: str, op: str, value: Any) -> Any:
    """Build the predicate node for one ``column__lookup=value`` pair."""
    if op == "eq":
        return Null(column) if value is None else Basic(column, "=", value)
    if op == "ne":
        return Null(column, negate=True) if value is None else Basic(column, "!=", value)
    if op in ("in", "notin"):
        values = value if isinstance(value, Query) else tuple(value)
        return In(column, values, negate=(op == "notin"))
    if op == "range":
        low, high = value
        return Between(column, low, high)
    if op == "isnull":
        return Null(column, negate=not value)
    if op == "isnotnull":
        return Null(column, negate=bool(value))
    if op in ("contains", "icontains"):
        return Basic(column, _LOOKUPS[op], f"%{value}%")
    if op in ("startswith", "istartswith"):
        return Basic(column, _LOOKUPS[op], f"{value}%")
    if op in ("endswith", "iendswith"):
        return Basic(column, _LOOKUPS[op], f"%{value}")
    return Basic(column, _LOOKUPS[op], value)


# ========== Query Builder ==========


class Query[T]:
    """Chainable query builder bound to a model (or a bare table) and a session.

    Builder methods mutate and return the query; use ``clone()`` to branch.

    Example:
        >>> users = await session.query(User).where("age", ">", 18).order_by("name").get()
        >>> count = await session.query(User).where("active", True).count()
        >>> rows = await session.table("audit_log").where("level", "error").get()
    """

    def __init__(self, session: AsyncSession | None, model: type[T] | None = None, *, table: str | None = None) -> None:
        if model is None and table is None:
            raise ValueError("A query needs a model or a table name")
        self._session = session
        self._model = model
        self._table: str = table or model.__tablename__  # type: ignore[union-attr]
        self._columns: list[Any] = []
        self._distinct = False
        self._joins: list[JoinClause] = []
        self._wheres: list[Where] = []
        self._groups: list[Any] = []
        self._havings: list[Where] = []
        self._orders: list[tuple[Any, str | None]] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._lock: str | None = None
        self._eager: list[LoadOption] = []
        self._trashed = "without"
        self._strict: bool | None = None
        self._identity = True
        self._identity_map: IdentityMap | None = None

    def __repr__(self) -> str:
        sql, params = self.to_sql()
        return f"<Query {sql!r} {params!r}>"

    @property
    def model(self) -> type[T] | None:
        return self._model

    @property
    def from_(self) -> str:
        return self._table

    def from_table(self, name: str) -> Query[T]:
        """Select from another table (``"posts"`` or ``"posts p"``)."""
        self._table = name
        return self

    @property
    def table_ref(self) -> str:
        """The name columns are qualified with (the alias when the table has one)."""
        parts = self._table.split()
        return parts[-1] if len(parts) > 1 else self._table

    def clone(self) -> Query[T]:
        """Copy the builder so the copy can be changed independently."""
        new = copy.copy(self)
        new._columns = list(self._columns)
        new._joins = [JoinClause(j.type, j.table, list(j.items)) for j in self._joins]
        new._wheres = list(self._wheres)
        new._groups = list(self._groups)
        new._havings = list(self._havings)
        new._orders = list(self._orders)
        new._eager = list(self._eager)
        return new

    def _new_nested(self) -> Query[T]:
        return Query(None, self._model, table=self._table)

    # ========== Projection ==========

    def select(self, *columns: Any) -> Query[T]:
        """Replace the selected columns."""
        self._columns = _flatten(columns)
        return self

    def add_select(self, *columns: Any) -> Query[T]:
        if not self._columns:
            self._columns = [self._default_column()]
        self._columns.extend(_flatten(columns))
        return self

    def select_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Query[T]:
        """Add a raw select expression, e.g. ``select_raw("price * ? AS gross", [1.2])``."""
        self._columns.append(Expression(sql, tuple(bindings)))
        return self

    def distinct(self) -> Query[T]:
        """Return only distinct rows."""
        self._distinct = True
        return self

    def _default_column(self) -> str:
        return f"{self.table_ref}.*" if self._model is not None else "*"

    def _key_column(self) -> str:
        pk = getattr(self._model, "__primary_key__", None) or "id"
        return f"{self.table_ref}.{pk}"

    # ========== Predicates ==========

    def where(self, column: Any, operator: Any = MISSING, value: Any = MISSING, boolean: str = "and") -> Query[T]:
        """Add a WHERE condition.

        Example:
            >>> query.where("age", ">", 18)
            >>> query.where("name", "Alice")                 # "=" implied
            >>> query.where("deleted_at", None)              # IS NULL
            >>> query.where({"status": "active", "role": "admin"})
            >>> query.where(lambda q: q.where("a", 1).or_where("b", 2))  # parenthesized group
            >>> query.where(Q(age__gt=18) | Q(vip=True))
        """
        if isinstance(column, Q):
            self._wheres.append(Where(boolean, column.to_node()))
            return self
        if isinstance(column, Mapping):
            items = tuple(Where("and", lookup(k, "eq", v)) for k, v in column.items())
            self._wheres.append(Where(boolean, Nested(items)))
            return self
        if isinstance(column, Expression) and operator is MISSING:
            self._wheres.append(Where(boolean, Raw(column)))
            return self
        if callable(column) and not isinstance(column, (str, Expression)):
            return self._where_nested(column, boolean)

        if value is MISSING:
            if operator is MISSING:
                raise TypeError(f"where({column!r}) needs a value to compare with")
            operator, value = "=", operator
        op = normalize_operator(operator)

        if value is None:
            if op in ("=", "is"):
                node: Any = Null(column)
            elif op in ("!=", "<>", "is not"):
                node = Null(column, negate=True)
            else:
                raise ValueError(f"Cannot compare {column!r} with NULL using {operator!r}")
        else:
            node = Basic(column, op, value)
        self._wheres.append(Where(boolean, node))
        return self

    def or_where(self, column: Any, operator: Any = MISSING, value: Any = MISSING) -> Query[T]:
        return self.where(column, operator, value, "or")

    def where_not(self, column: Any, operator: Any = MISSING, value: Any = MISSING, boolean: str = "and") -> Query[T]:
        """Add a negated condition or group: ``NOT (...)``."""
        nested = self._new_nested()
        nested.where(column, operator, value)
        self._wheres.append(Where(boolean, Nested(tuple(nested._wheres), negate=True)))
        return self

    def or_where_not(self, column: Any, operator: Any = MISSING, value: Any = MISSING) -> Query[T]:
        return self.where_not(column, operator, value, "or")

    def _where_nested(self, callback: Callable[[Query[T]], Any], boolean: str) -> Query[T]:
        nested = self._new_nested()
        callback(nested)
        if nested._wheres:
            self._wheres.append(Where(boolean, Nested(tuple(nested._wheres))))
        return self

    def filter(self, *q_objects: Q, **kwargs: Any) -> Query[T]:
        """Filter using Q objects and/or keyword lookups.

        Example:
            >>> query.filter(age__gte=18, name__icontains="smith")
            >>> query.filter(Q(role="admin") | Q(role="owner"), active=True)
            >>> query.filter(metadata__tier="gold")  # key inside a JSON column
        """
        for q in q_objects:
            self.where(q)
        for key, value in kwargs.items():
            col, op = _parse_filter_key(key)
            self._wheres.append(Where("and", lookup(col, op, value)))
        return self

    def filter_by(self, **kwargs: Any) -> Query[T]:
        """Simple equality filter."""
        for key, value in kwargs.items():
            self.where(key, value)
        return self

    def where_in(self, column: Any, values: Iterable[Any] | Query[Any], boolean: str = "and", negate: bool = False) -> Query[T]:
        """``column IN (...)``; ``values`` may be a sub-query. An empty list matches nothing."""
        if not isinstance(values, Query):
            values = tuple(values)
        self._wheres.append(Where(boolean, In(column, values, negate)))
        return self

    def where_not_in(self, column: Any, values: Iterable[Any] | Query[Any]) -> Query[T]:
        return self.where_in(column, values, negate=True)

    def or_where_in(self, column: Any, values: Iterable[Any] | Query[Any]) -> Query[T]:
        return self.where_in(column, values, "or")

    def or_where_not_in(self, column: Any, values: Iterable[Any] | Query[Any]) -> Query[T]:
        return self.where_in(column, values, "or", negate=True)

    def where_null(self, column: Any, boolean: str = "and", negate: bool = False) -> Query[T]:
        self._wheres.append(Where(boolean, Null(column, negate)))
        return self

    def where_not_null(self, column: Any) -> Query[T]:
        return self.where_null(column, negate=True)

    def or_where_null(self, column: Any) -> Query[T]:
        return self.where_null(column, "or")

    def or_where_not_null(self, column: Any) -> Query[T]:
        return self.where_null(column, "or", negate=True)

    def where_between(self, column: Any, values: tuple[Any, Any] | list[Any], boolean: str = "and", negate: bool = False) -> Query[T]:
        low, high = values
        self._wheres.append(Where(boolean, Between(column, low, high, negate)))
        return self

    def where_not_between(self, column: Any, values: tuple[Any, Any] | list[Any]) -> Query[T]:
        return self.where_between(column, values, negate=True)

    def or_where_between(self, column: Any, values: tuple[Any, Any] | list[Any]) -> Query[T]:
        return self.where_between(column, values, "or")

    def where_exists(
        self, query: Query[Any] | Callable[[Query[Any]], Any], boolean: str = "and", negate: bool = False
    ) -> Query[T]:
        """``EXISTS (sub-query)``.

        ``query`` is a builder, or a callable that receives a fresh builder
        over this query's table (switch it with ``from_table``).

        Example:
            >>> has_posts = session.table("posts").select_raw("1").where_column("posts.author_id", "authors.id")
            >>> session.query(Author).where_exists(has_posts)
            >>> session.query(Author).where_exists(
            ...     lambda q: q.from_table("posts").where_column("posts.author_id", "authors.id")
            ... )
        """
        if not isinstance(query, Query):
            sub: Query[Any] = Query(None, None, table=self._table)
            result = query(sub)
            query = result if isinstance(result, Query) else sub
        self._wheres.append(Where(boolean, Exists(query, negate)))
        return self

    def where_not_exists(self, query: Query[Any] | Callable[[Query[Any]], Any]) -> Query[T]:
        return self.where_exists(query, negate=True)

    def or_where_exists(self, query: Query[Any] | Callable[[Query[Any]], Any]) -> Query[T]:
        return self.where_exists(query, "or")

    def where_column(self, first: str, operator: str, second: str | None = None, boolean: str = "and") -> Query[T]:
        """Compare two columns, e.g. ``where_column("updated_at", ">", "created_at")``."""
        if second is None:
            operator, second = "=", operator
        self._wheres.append(Where(boolean, ColumnCompare(first, normalize_operator(operator), second)))
        return self

    def or_where_column(self, first: str, operator: str, second: str | None = None) -> Query[T]:
        return self.where_column(first, operator, second, "or")

    def where_raw(self, sql: str, bindings: Iterable[Any] = (), boolean: str = "and") -> Query[T]:
        """Add a raw condition. ``?`` markers must match ``bindings`` one to one."""
        self._wheres.append(Where(boolean, Raw(Expression(sql, tuple(bindings)))))
        return self

    def or_where_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Query[T]:
        return self.where_raw(sql, bindings, "or")

    def when(self, condition: Any, callback: Callable[[Query[T]], Any], default: Callable[[Query[T]], Any] | None = None) -> Query[T]:
        """Apply ``callback`` only when ``condition`` is truthy."""
        if condition:
            callback(self)
        elif default is not None:
            default(self)
        return self

    def _nest_wheres(self) -> Query[T]:
        # Wrap the current conditions so appended ones bind to the whole group
        if has_or(self._wheres):
            self._wheres = [Where("and", Nested(tuple(self._wheres)))]
        return self

    def _apply_constraint(self, constraint: Callable[[Query[T]], Any]) -> Query[T]:
        """Run a caller's constraint without letting its ORs escape our conditions."""
        before = len(self._wheres)
        constraint(self)
        added = self._wheres[before:]
        if has_or(added) or (added and added[0].boolean == "or"):
            self._wheres = self._wheres[:before] + [Where("and", Nested(tuple(added)))]
        return self

    def _scope_items(self) -> list[Where]:
        if self._model is None or not getattr(self._model, "__soft_delete__", False):
            return []
        column = f"{self.table_ref}.{self._model.__deleted_at__}"  # type: ignore[attr-defined]
        if self._trashed == "without":
            return [Where("and", Null(column))]
        if self._trashed == "only":
            return [Where("and", Null(column, negate=True))]
        return []

    def _where_items(self) -> list[Where]:
        """User conditions plus scope conditions, as compiled."""
        items = list(self._wheres)
        scope = self._scope_items()
        if not scope:
            return items
        if has_or(items):
            items = [Where("and", Nested(tuple(items)))]
        return items + scope

    # ========== Joins ==========

    def join(self, table: str, first: Any, operator: str | None = None, second: str | None = None, type: str = "inner") -> Query[T]:
        """Add a JOIN.

        Example:
            >>> query.join("posts", "users.id", "=", "posts.user_id")
            >>> query.join("posts", lambda j: j.on("users.id", "posts.user_id").where("posts.draft", False))
        """
        clause = JoinClause(type, table)
        if callable(first) and not isinstance(first, str):
            first(clause)
        else:
            clause.on(first, operator, second)
        self._joins.append(clause)
        return self

    def left_join(self, table: str, first: Any, operator: str | None = None, second: str | None = None) -> Query[T]:
        return self.join(table, first, operator, second, "left")

    def right_join(self, table: str, first: Any, operator: str | None = None, second: str | None = None) -> Query[T]:
        return self.join(table, first, operator, second, "right")

    def cross_join(self, table: str) -> Query[T]:
        self._joins.append(JoinClause("cross", table))
        return self

    # ========== Ordering, grouping, limits ==========

    def order_by(self, column: Any, direction: str = "asc") -> Query[T]:
        """Add ORDER BY. A leading ``-`` on the column means descending.

        Example:
            >>> query.order_by("created_at", "desc")
            >>> query.order_by("-created_at")
        """
        if isinstance(column, str) and column.startswith("-"):
            column, direction = column[1:], "desc"
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Order direction must be 'asc' or 'desc', got {direction!r}")
        self._orders.append((column, direction))
        return self

    def order_by_desc(self, column: Any) -> Query[T]:
        return self.order_by(column, "desc")

    def order_by_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Query[T]:
        self._orders.append((Expression(sql, tuple(bindings)), None))
        return self

    def latest(self, column: str = "created_at") -> Query[T]:
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> Query[T]:
        return self.order_by(column, "asc")

    def reorder(self, column: Any = None, direction: str = "asc") -> Query[T]:
        """Drop existing ordering, optionally replacing it."""
        self._orders = []
        if column is not None:
            self.order_by(column, direction)
        return self

    def group_by(self, *columns: Any) -> Query[T]:
        self._groups.extend(_flatten(columns))
        return self

    def having(self, column: Any, operator: Any = MISSING, value: Any = MISSING, boolean: str = "and") -> Query[T]:
        """Add a HAVING condition, e.g. ``having("COUNT(*)", ">", 5)``."""
        if value is MISSING:
            operator, value = "=", operator
        self._havings.append(Where(boolean, Basic(column, normalize_operator(operator), value)))
        return self

    def or_having(self, column: Any, operator: Any = MISSING, value: Any = MISSING) -> Query[T]:
        return self.having(column, operator, value, "or")

    def having_raw(self, sql: str, bindings: Iterable[Any] = (), boolean: str = "and") -> Query[T]:
        self._havings.append(Where(boolean, Raw(Expression(sql, tuple(bindings)))))
        return self

    def limit(self, n: int) -> Query[T]:
        """Limit the number of results."""
        if n < 0:
            raise ValueError("limit must not be negative")
        self._limit = int(n)
        return self

    def offset(self, n: int) -> Query[T]:
        """Skip the first n results."""
        if n < 0:
            raise ValueError("offset must not be negative")
        self._offset = int(n)
        return self

    def for_page(self, page: int, per_page: int = 15) -> Query[T]:
        """Limit/offset for a 1-based page number."""
        return self.offset(max(page - 1, 0) * per_page).limit(per_page)

    # ========== Locking ==========

    def lock_for_update(self) -> Query[T]:
        """``FOR UPDATE`` (PostgreSQL; SQLite locks the whole database on write)."""
        self._lock = "update"
        return self

    def shared_lock(self) -> Query[T]:
        self._lock = "share"
        return self

    # ========== Eager loading ==========

    def with_(self, *relations: str | Mapping[str, Callable[[Query[Any]], Any]] | LoadOption) -> Query[T]:
        """Eager load relation paths.

        Example:
            >>> query.with_("author", "comments.author")
            >>> query.with_({"comments": lambda q: q.where("approved", True).latest()})
        """
        from relkit.loading import as_load_options

        self._eager.extend(as_load_options(relations))
        return self

    def options(self, *opts: LoadOption) -> Query[T]:
        """Add relationship loading options.

        Example:
            >>> query.options(selectinload("posts"), noload("avatar"))
        """
        self._eager.extend(opts)
        return self

    def without(self, *paths: str) -> Query[T]:
        """Remove previously requested eager loads."""
        self._eager = [o for o in self._eager if o.path not in paths]
        return self

    def strict(self, enabled: bool = True) -> Query[T]:
        """Mark hydrated entities as strict: lazy relation fetches raise ``LazyAccessViolation``."""
        self._strict = enabled
        return self

    # ========== Scopes and soft deletes ==========

    def apply(self, scope: Callable[..., Query[T] | None], *args: Any, **kwargs: Any) -> Query[T]:
        """Apply a reusable scope function.

        Example:
            >>> def published(query):
            ...     return query.where("published", True)
            >>> await session.query(Post).apply(published).get()
        """
        result = scope(self, *args, **kwargs)
        return self if result is None else result

    def with_trashed(self) -> Query[T]:
        """Include soft-deleted records."""
        self._trashed = "with"
        return self

    def only_trashed(self) -> Query[T]:
        """Only soft-deleted records."""
        self._trashed = "only"
        return self

    def without_trashed(self) -> Query[T]:
        self._trashed = "without"
        return self

    # ========== Compilation ==========

    def _grammar(self, dialect: str | None = None) -> Grammar:
        if dialect is None:
            dialect = self._session.dialect if self._session is not None else "postgresql"
        return grammar_for(dialect)

    def to_sql(self, dialect: str | None = None) -> tuple[str, list[Any]]:
        """Compile to ``(sql, bindings)``.

        Example:
            >>> select(User).where("age", ">", 18).to_sql("sqlite")
            ('SELECT "users".* FROM "users" WHERE "age" > ?', [18])
        """
        return self._grammar(dialect).compile_select(self)

    # ========== Reads ==========

    def _require_session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("Query is not bound to a session; build it with session.query()")
        return self._session

    async def _rows(self) -> list[dict[str, Any]]:
        sql, params = self.to_sql()
        result = await self._require_session().execute(sql, params)
        return result.all()

    def _plan(self) -> LoadPlan | None:
        if self._model is None or not self._eager:
            return None
        from relkit.loading import LoadPlan

        return LoadPlan.build(self._model, self._eager)

    async def get(self) -> list[T]:
        """Execute and return every matching entity (or row dict for table queries)."""
        # Invalid eager paths fail before any SQL runs
        plan = self._plan()
        rows = await self._rows()
        if self._model is None:
            return rows  # type: ignore[return-value]
        return await self._hydrate(rows, plan)

    async def all(self) -> list[T]:
        return await self.get()

    async def _hydrate(self, rows: list[dict[str, Any]], plan: LoadPlan | None) -> list[T]:
        from relkit.loading import EagerLoadPlanner, IdentityMap, ResultHydrator

        session = self._require_session()
        identity_map = self._identity_map if self._identity_map is not None else IdentityMap()
        strict = session.strict if self._strict is None else self._strict
        hydrator = ResultHydrator(self._model, session, identity_map, dedupe=self._identity, strict=strict)  # type: ignore[arg-type]
        entities = hydrator.hydrate(rows)
        if plan is not None and entities:
            await EagerLoadPlanner(session, identity_map, strict=strict).run(plan, entities)
        return entities  # type: ignore[return-value]

    async def first(self) -> T | None:
        """Get the first result or None."""
        results = await self.clone().limit(1).get()
        return results[0] if results else None

    async def first_or_fail(self) -> T:
        result = await self.first()
        if result is None:
            raise NotFound(self._model or self._table)
        return result

    async def find(self, key: Any) -> T | None:
        """Find by primary key."""
        return await self.clone().where(self._key_column(), key).first()

    async def find_or_fail(self, key: Any) -> T:
        result = await self.find(key)
        if result is None:
            raise NotFound(self._model or self._table, key)
        return result

    async def find_many(self, keys: Iterable[Any]) -> list[T]:
        return await self.clone().where_in(self._key_column(), keys).get()

    async def one(self) -> T:
        """Get exactly one result; raises if none or more than one."""
        from relkit.errors import MultipleRecordsFound

        results = await self.clone().limit(2).get()
        if not results:
            raise NotFound(self._model or self._table)
        if len(results) > 1:
            raise MultipleRecordsFound(f"Expected one {self._table} row, found several")
        return results[0]

    async def pluck(self, column: str, key: str | None = None) -> list[Any] | dict[Any, Any]:
        """Values of one column, or a ``{key: value}`` dict.

        Example:
            >>> await session.query(User).order_by("id").pluck("email")
            ['a@example.com', 'b@example.com']
        """
        q = self.clone()
        q._columns = [column] if key is None else [column, key]
        q._eager = []
        rows = await q._rows()
        name = _result_name(column)
        if key is None:
            return [row[name] for row in rows]
        key_name = _result_name(key)
        return {row[key_name]: row[name] for row in rows}

    async def value(self, column: str) -> Any:
        values = await self.clone().limit(1).pluck(column)
        return values[0] if values else None

    # ========== Aggregates ==========

    async def _aggregate(self, function: str, column: str) -> Any:
        q = self.clone()
        q._orders = []
        q._lock = None
        sql, params = self._grammar().compile_aggregate(q, function, column)
        result = await self._require_session().execute(sql, params)
        return result.scalar()

    async def count(self, column: str = "*") -> int:
        """Count matching rows."""
        return int(await self._aggregate("count", column) or 0)

    async def sum(self, column: str) -> Any:
        """Sum of a column, or None when no rows match."""
        return await self._aggregate("sum", column)

    async def avg(self, column: str) -> float | None:
        result = await self._aggregate("avg", column)
        return float(result) if result is not None else None

    async def min(self, column: str) -> Any:
        return await self._aggregate("min", column)

    async def max(self, column: str) -> Any:
        return await self._aggregate("max", column)

    async def exists(self) -> bool:
        """Check if any matching rows exist."""
        q = self.clone()
        q._orders = []
        sql, params = self._grammar().compile_exists(q)
        result = await self._require_session().execute(sql, params)
        return bool(result.scalar())

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    # ========== Writes ==========

    async def _write(self, sql: str, params: list[Any]) -> int:
        session = self._require_session()
        count = await session.execute_statement(sql, params)
        # cached entities of this table may no longer match their rows
        session.forget(self._table.split()[0])
        return count

    async def insert(self, values: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
        """Insert one or many rows. Returns the number inserted."""
        rows = _rows_of(values)
        if not rows:
            return 0
        sql, params = self._grammar().compile_insert(self._table, rows)
        return await self._require_session().execute_statement(sql, params)

    async def insert_or_ignore(self, values: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
        """Insert rows, skipping any that hit a unique constraint."""
        rows = _rows_of(values)
        if not rows:
            return 0
        sql, params = self._grammar().compile_insert(self._table, rows, ignore=True)
        return await self._require_session().execute_statement(sql, params)

    async def insert_get_id(self, values: Mapping[str, Any], key: str | None = None) -> Any:
        """Insert one row and return its generated key."""
        key = key or getattr(self._model, "__primary_key__", None) or "id"
        sql, params = self._grammar().compile_insert(self._table, [dict(values)], returning=[key])
        result = await self._require_session().execute(sql, params)
        return result.scalar()

    async def upsert(
        self,
        values: Mapping[str, Any] | Iterable[Mapping[str, Any]],
        unique_by: str | list[str],
        update: list[str] | None = None,
    ) -> int:
        """Insert rows or update the ones whose ``unique_by`` columns already exist.

        Example:
            >>> await session.table("stock").upsert(
            ...     [{"sku": "A1", "qty": 5}], unique_by="sku", update=["qty"]
            ... )
        """
        rows = _rows_of(values)
        if not rows:
            return 0
        unique = [unique_by] if isinstance(unique_by, str) else list(unique_by)
        sql, params = self._grammar().compile_upsert(self._table, rows, unique, update)
        return await self._write(sql, params)

    async def update(self, values: Mapping[str, Any] | None = None, **kwargs: Any) -> int:
        """Update matching rows. Returns the number of rows affected.

        Example:
            >>> await session.query(User).where("active", False).update({"status": "inactive"})
        """
        data = {**(values or {}), **kwargs}
        if self._model is not None and getattr(self._model, "__timestamps__", False):
            data.setdefault("updated_at", datetime.now(UTC))
        sql, params = self._grammar().compile_update(self, data)
        return await self._write(sql, params)

    async def increment(self, column: str, amount: int | float = 1, extra: Mapping[str, Any] | None = None) -> int:
        """Atomically add ``amount`` to a column on every matching row."""
        wrapped = self._grammar().quote(column)
        return await self.update({column: Expression(f"{wrapped} + ?", (amount,)), **(extra or {})})

    async def decrement(self, column: str, amount: int | float = 1, extra: Mapping[str, Any] | None = None) -> int:
        wrapped = self._grammar().quote(column)
        return await self.update({column: Expression(f"{wrapped} - ?", (amount,)), **(extra or {})})

    async def delete(self) -> int:
        """Delete matching rows. Soft-delete models get ``deleted_at`` stamped instead."""
        if self._model is not None and getattr(self._model, "__soft_delete__", False):
            return await self.update({self._model.__deleted_at__: datetime.now(UTC)})  # type: ignore[attr-defined]
        return await self.force_delete()

    async def force_delete(self) -> int:
        """Permanently delete matching rows."""
        sql, params = self._grammar().compile_delete(self)
        return await self._write(sql, params)

    async def restore(self) -> int:
        """Clear ``deleted_at`` on matching soft-deleted rows."""
        if self._model is None or not getattr(self._model, "__soft_delete__", False):
            raise TypeError(f"{self._table} does not use soft deletes")
        q = self.clone().only_trashed()
        return await q.update({self._model.__deleted_at__: None})  # type: ignore[attr-defined]

    # ========== Chunking and streaming ==========

    def _chunk_size(self, size: int | None) -> int:
        if size is not None:
            return size
        return self._session.config.chunk_size if self._session is not None else 1000

    async def chunk(self, size: int, callback: Callable[[list[T]], Awaitable[Any] | Any]) -> bool:
        """Process results page by page (LIMIT/OFFSET).

        Returning ``False`` from ``callback`` stops early; the result is
        ``False`` when that happened. Prefer ``chunk_by_id`` when the callback
        modifies rows the query filters on.
        """
        from relkit.chunking import ChunkCursor

        return await ChunkCursor(self, size).each_page(callback)

    async def chunk_by_id(
        self,
        size: int,
        callback: Callable[[list[T]], Awaitable[Any] | Any],
        column: str | None = None,
        alias: str | None = None,
    ) -> bool:
        """Process results in pages seeded by the last seen key (``key > last``)."""
        from relkit.chunking import ChunkCursor

        return await ChunkCursor(self, size, by_key=True, column=column, alias=alias).each_page(callback)

    async def each(self, callback: Callable[[T], Awaitable[Any] | Any], size: int | None = None) -> bool:
        """Call ``callback`` for each entity; returning ``False`` stops."""

        async def per_item(page: list[T]) -> bool:
            for item in page:
                result = callback(item)
                if inspect.isawaitable(result):
                    result = await result
                if result is False:
                    return False
            return True

        return await self.chunk(self._chunk_size(size), per_item)

    def lazy(self, size: int | None = None) -> ChunkCursor[T]:
        """Stream entities page by page, holding one page in memory.

        Example:
            >>> async for user in session.query(User).lazy(500):
            ...     await process(user)
        """
        from relkit.chunking import ChunkCursor

        return ChunkCursor(self, self._chunk_size(size))

    def lazy_by_id(self, size: int | None = None, column: str | None = None, alias: str | None = None) -> ChunkCursor[T]:
        from relkit.chunking import ChunkCursor

        return ChunkCursor(self, self._chunk_size(size), by_key=True, column=column, alias=alias)

    def __aiter__(self) -> AsyncIterator[T]:
        """Allow ``async for user in session.query(User)``."""
        return self.lazy().__aiter__()

    # ========== Pagination ==========

    async def paginate(self, per_page: int = 15, page: int = 1) -> Page[T]:
        """One page plus the total count."""
        from relkit.pagination import paginate

        return await paginate(self, per_page, page)

    async def simple_paginate(self, per_page: int = 15, page: int = 1) -> Page[T]:
        """One page without the COUNT query; ``has_more`` tells if another follows."""
        from relkit.pagination import simple_paginate

        return await simple_paginate(self, per_page, page)

    async def cursor_paginate(self, per_page: int = 15, cursor: str | None = None, column: str | None = None) -> CursorPage[T]:
        """Keyset pagination by an ascending unique column (the primary key by default)."""
        from relkit.pagination import cursor_paginate

        return await cursor_paginate(self, per_page, cursor, column)


def _flatten(columns: Iterable[Any]) -> list[Any]:
    flat: list[Any] = []
    for column in columns:
        if isinstance(column, (list, tuple)):
            flat.extend(column)
        else:
            flat.append(column)
    return flat


def _rows_of(values: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(values, Mapping):
        return [dict(values)]
    return [dict(v) for v in values]


def _result_name(column: str) -> str:
    """The key a selected column comes back under."""
    parts = column.split()
    if len(parts) >= 3 and parts[-2].lower() == "as":
        return parts[-1]
    return column.split(".")[-1]


def select[T: "Base"](model: type[T]) -> Query[T]:
    """Create an unbound query, useful for sub-queries and ``to_sql()``.

    Example:
        >>> sql, params = select(User).where("age", ">", 18).to_sql("sqlite")
    """
    return Query(None, model)


def table(name: str) -> Query[Any]:
    """Create an unbound query over a bare table."""
    return Query(None, table=name)
