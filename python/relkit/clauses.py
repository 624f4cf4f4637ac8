"""Predicate tree nodes shared by the query builder and the SQL grammars."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

OPERATORS = frozenset({
    "=", "<", ">", "<=", ">=", "<>", "!=",
    "like", "not like", "ilike", "not ilike",
    "is", "is not", "glob", "regexp",
})

# Marks an argument the caller left out, so None can still mean NULL
MISSING: Any = object()


def normalize_operator(operator: str) -> str:
    op = " ".join(str(operator).lower().split())
    if op not in OPERATORS:
        raise ValueError(f"Unsupported comparison operator: {operator!r}")
    return op


@dataclass(frozen=True)
class Expression:
    """A literal SQL fragment with positional ``?`` bindings.

    The SQL text is passed through untouched; only the number of ``?``
    markers is checked against the bindings.
    """

    sql: str
    bindings: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if self.sql.count("?") != len(self.bindings):
            raise ValueError(
                f"Raw expression has {self.sql.count('?')} placeholder(s) "
                f"but {len(self.bindings)} binding(s): {self.sql!r}"
            )


def raw(sql: str, *bindings: Any) -> Expression:
    """Build a raw SQL expression.

    Example:
        >>> query.where_raw("price > ? * discount", [10])
        >>> query.select(raw("COUNT(*) AS total"))
    """
    return Expression(sql, tuple(bindings))


@dataclass(frozen=True)
class Basic:
    column: Any
    operator: str
    value: Any


@dataclass(frozen=True)
class Null:
    column: Any
    negate: bool = False


@dataclass(frozen=True)
class In:
    column: Any
    values: Any  # tuple of values or a sub-query
    negate: bool = False


@dataclass(frozen=True)
class Between:
    column: Any
    low: Any
    high: Any
    negate: bool = False


@dataclass(frozen=True)
class ColumnCompare:
    first: Any
    operator: str
    second: Any


@dataclass(frozen=True)
class Raw:
    expression: Expression


@dataclass(frozen=True)
class Exists:
    query: Any
    negate: bool = False


@dataclass(frozen=True)
class Nested:
    items: tuple[Where, ...]
    negate: bool = False


Node = Basic | Null | In | Between | ColumnCompare | Raw | Exists | Nested


@dataclass(frozen=True)
class Where:
    """One predicate and the boolean ("and"/"or") joining it to the previous one."""

    boolean: str
    node: Node


def has_or(items: list[Where] | tuple[Where, ...]) -> bool:
    """Whether OR appears at the top level of a predicate list."""
    return any(item.boolean == "or" for item in items[1:])


@dataclass
class JoinClause:
    """Conditions for one JOIN.

    Example:
        >>> query.join("posts", lambda j: j.on("users.id", "=", "posts.user_id").where("posts.published", True))
    """

    type: str
    table: Any
    items: list[Where] = field(default_factory=list)

    def on(self, first: Any, operator: Any = None, second: Any = None, boolean: str = "and") -> JoinClause:
        if second is None:
            operator, second = "=", operator
        self.items.append(Where(boolean, ColumnCompare(first, normalize_operator(operator), second)))
        return self

    def or_on(self, first: Any, operator: Any = None, second: Any = None) -> JoinClause:
        return self.on(first, operator, second, "or")

    def where(self, column: Any, operator: Any = MISSING, value: Any = MISSING, boolean: str = "and") -> JoinClause:
        """Compare a joined column with a bound value (two arguments mean ``=``)."""
        if value is MISSING:
            if operator is MISSING:
                raise TypeError(f"where({column!r}) needs a value to compare with")
            operator, value = "=", operator
        op = normalize_operator(operator)
        if value is None:
            if op not in ("=", "is", "!=", "<>", "is not"):
                raise ValueError(f"Cannot compare {column!r} with NULL using {operator!r}")
            self.items.append(Where(boolean, Null(column, negate=op in ("!=", "<>", "is not"))))
        else:
            self.items.append(Where(boolean, Basic(column, op, value)))
        return self

    def or_where(self, column: Any, operator: Any = MISSING, value: Any = MISSING) -> JoinClause:
        return self.where(column, operator, value, "or")

    def where_null(self, column: Any, boolean: str = "and") -> JoinClause:
        self.items.append(Where(boolean, Null(column)))
        return self


JoinCallback = Callable[[JoinClause], Any]
