"""SQL compilation for query builders.

A grammar turns a builder's clause lists into one SQL string plus one
positional bindings list. Placeholders are numbered in the order values are
appended, so the output is identical for identical builder state.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from relkit.clauses import (
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
)

if TYPE_CHECKING:
    from relkit.query import Query

_AS = re.compile(r"\s+as\s+", re.IGNORECASE)


class Grammar:
    """Shared compilation rules; dialects override the small differences."""

    dialect: str = ""

    # ========== Placeholders and identifiers ==========

    def parameter(self, index: int) -> str:
        return "?"

    def param(self, bindings: list[Any], value: Any) -> str:
        """Append a bound value and return its placeholder."""
        if isinstance(value, Expression):
            return self.raw(bindings, value)
        bindings.append(value)
        return self.parameter(len(bindings))

    def raw(self, bindings: list[Any], expression: Expression) -> str:
        """Inline a raw fragment, renumbering its ``?`` markers in place."""
        if not expression.bindings:
            return expression.sql
        pieces = expression.sql.split("?")
        out = [pieces[0]]
        for value, piece in zip(expression.bindings, pieces[1:]):
            bindings.append(value)
            out.append(self.parameter(len(bindings)))
            out.append(piece)
        return "".join(out)

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def wrap(self, value: Any, bindings: list[Any] | None = None) -> str:
        """Quote a column or table reference.

        ``users.name`` becomes ``"users"."name"``, ``name as n`` becomes
        ``"name" AS "n"`` and ``data->meta->tier`` becomes a JSON path lookup.
        Function calls such as ``COUNT(*)`` are passed through.
        """
        if isinstance(value, Expression):
            return self.raw(bindings if bindings is not None else [], value)
        value = str(value)
        alias = _AS.split(value, maxsplit=1)
        if len(alias) == 2:
            return f"{self.wrap(alias[0], bindings)} AS {self.quote(alias[1].strip())}"
        if "(" in value or value == "*":
            return value
        if "->" in value:
            column, *path = value.split("->")
            return self.json_path(self.wrap(column), path)
        return ".".join(p if p == "*" else self.quote(p) for p in value.split("."))

    def json_path(self, column: str, path: list[str]) -> str:
        raise NotImplementedError

    def _literal(self, text: str) -> str:
        return "'" + text.replace("'", "''") + "'"

    # ========== SELECT ==========

    def compile_select(self, query: Query[Any], bindings: list[Any] | None = None) -> tuple[str, list[Any]]:
        """Compile a SELECT. Sub-queries share the parent's bindings list."""
        b: list[Any] = [] if bindings is None else bindings
        parts = [self._select_head(query, b)]
        parts.append(f"FROM {self.wrap(query.from_)}")
        parts.extend(self._joins(b, query._joins))

        where = self.compile_wheres(b, query._where_items())
        if where:
            parts.append(f"WHERE {where}")
        if query._groups:
            parts.append("GROUP BY " + ", ".join(self.wrap(g, b) for g in query._groups))
        having = self.compile_wheres(b, query._havings)
        if having:
            parts.append(f"HAVING {having}")
        if query._orders:
            parts.append("ORDER BY " + self._orders(b, query._orders))
        parts.extend(self._limits(query))
        lock = self.lock(query._lock)
        if lock:
            parts.append(lock)
        return " ".join(parts), b

    def _select_head(self, query: Query[Any], bindings: list[Any]) -> str:
        columns = query._columns or [query._default_column()]
        head = "SELECT DISTINCT " if query._distinct else "SELECT "
        return head + ", ".join(self.wrap(c, bindings) for c in columns)

    def _joins(self, bindings: list[Any], joins: list[JoinClause]) -> list[str]:
        compiled = []
        for join in joins:
            table = self.wrap(join.table)
            if join.type == "cross":
                compiled.append(f"CROSS JOIN {table}")
                continue
            conditions = self.compile_wheres(bindings, join.items)
            compiled.append(f"{join.type.upper()} JOIN {table} ON {conditions}")
        return compiled

    def _orders(self, bindings: list[Any], orders: list[tuple[Any, str | None]]) -> str:
        compiled = []
        for column, direction in orders:
            if isinstance(column, Expression):
                compiled.append(self.raw(bindings, column))
            else:
                compiled.append(f"{self.wrap(column)} {direction.upper() if direction else 'ASC'}")
        return ", ".join(compiled)

    def _limits(self, query: Query[Any]) -> list[str]:
        parts = []
        if query._limit is not None:
            parts.append(f"LIMIT {int(query._limit)}")
        if query._offset:
            if query._limit is None:
                parts.append(self.no_limit())
            parts.append(f"OFFSET {int(query._offset)}")
        return parts

    def no_limit(self) -> str:
        return "LIMIT ALL"

    def lock(self, mode: str | None) -> str:
        return ""

    # ========== Predicates ==========

    def compile_wheres(self, bindings: list[Any], items: list[Where] | tuple[Where, ...]) -> str:
        """Compile a predicate list; the first item's boolean is ignored."""
        parts: list[str] = []
        for item in items:
            sql = self.compile_node(bindings, item.node)
            if not sql:
                continue
            parts.append(sql if not parts else f"{item.boolean.upper()} {sql}")
        return " ".join(parts)

    def compile_node(self, bindings: list[Any], node: Any) -> str:
        if isinstance(node, Basic):
            column = self.wrap(node.column, bindings)
            operator = self.operator(node.operator)
            if _is_query(node.value):
                sub, _ = self.compile_select(node.value, bindings)
                return f"{column} {operator} ({sub})"
            return f"{column} {operator} {self.param(bindings, node.value)}"
        if isinstance(node, Null):
            return f"{self.wrap(node.column, bindings)} IS {'NOT ' if node.negate else ''}NULL"
        if isinstance(node, In):
            return self._in(bindings, node)
        if isinstance(node, Between):
            column = self.wrap(node.column, bindings)
            low = self.param(bindings, node.low)
            high = self.param(bindings, node.high)
            return f"{column} {'NOT ' if node.negate else ''}BETWEEN {low} AND {high}"
        if isinstance(node, ColumnCompare):
            return f"{self.wrap(node.first)} {self.operator(node.operator)} {self.wrap(node.second)}"
        if isinstance(node, Raw):
            return f"({self.raw(bindings, node.expression)})"
        if isinstance(node, Exists):
            sub, _ = self.compile_select(node.query, bindings)
            return f"{'NOT ' if node.negate else ''}EXISTS ({sub})"
        if isinstance(node, Nested):
            inner = self.compile_wheres(bindings, node.items)
            if not inner:
                return ""
            return f"{'NOT ' if node.negate else ''}({inner})"
        raise TypeError(f"Unknown predicate node: {node!r}")

    def _in(self, bindings: list[Any], node: In) -> str:
        column = self.wrap(node.column, bindings)
        keyword = "NOT IN" if node.negate else "IN"
        if _is_query(node.values):
            sub, _ = self.compile_select(node.values, bindings)
            return f"{column} {keyword} ({sub})"
        if not node.values:
            # Empty IN matches nothing, empty NOT IN matches everything
            return "1 = 1" if node.negate else "1 = 0"
        placeholders = ", ".join(self.param(bindings, v) for v in node.values)
        return f"{column} {keyword} ({placeholders})"

    def operator(self, op: str) -> str:
        return op.upper()

    # ========== Aggregates ==========

    def compile_aggregate(self, query: Query[Any], function: str, column: str = "*") -> tuple[str, list[Any]]:
        """Compile ``SELECT <function>(<column>) AS aggregate``.

        Grouped, distinct or limited counts are computed over the full query
        as a derived table.
        """
        b: list[Any] = []
        target = "*" if column == "*" else self.wrap(column)
        if function == "count" and (query._groups or query._distinct or query._limit is not None or query._offset):
            inner, _ = self.compile_select(query, b)
            return f'SELECT COUNT(*) AS "aggregate" FROM ({inner}) AS "aggregate_table"', b

        parts = [f'SELECT {function.upper()}({target}) AS "aggregate"', f"FROM {self.wrap(query.from_)}"]
        parts.extend(self._joins(b, query._joins))
        where = self.compile_wheres(b, query._where_items())
        if where:
            parts.append(f"WHERE {where}")
        return " ".join(parts), b

    def compile_exists(self, query: Query[Any]) -> tuple[str, list[Any]]:
        inner, b = self.compile_select(query)
        return f'SELECT EXISTS ({inner}) AS "exists"', b

    # ========== Writes ==========

    def compile_insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        *,
        returning: list[str] | None = None,
        ignore: bool = False,
    ) -> tuple[str, list[Any]]:
        """Compile a (multi-row) INSERT. Every row must have the same columns."""
        if not rows:
            raise ValueError("No values specified for INSERT")
        columns = list(rows[0])
        b: list[Any] = []
        groups = []
        for row in rows:
            if set(row) != set(columns):
                raise ValueError("Every inserted row must have the same columns")
            groups.append("(" + ", ".join(self.param(b, row[c]) for c in columns) + ")")
        sql = (
            f"INSERT INTO {self.wrap(table)} ({', '.join(self.quote(c) for c in columns)}) "
            f"VALUES {', '.join(groups)}"
        )
        if ignore:
            sql += " ON CONFLICT DO NOTHING"
        if returning:
            sql += " RETURNING " + ", ".join(self.wrap(c) for c in returning)
        return sql, b

    def compile_upsert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        unique_by: list[str],
        update: list[str] | None,
        *,
        returning: list[str] | None = None,
    ) -> tuple[str, list[Any]]:
        """Compile ``INSERT ... ON CONFLICT (...) DO UPDATE``.

        ``update`` defaults to every inserted column outside ``unique_by``; an
        empty list means DO NOTHING.
        """
        sql, b = self.compile_insert(table, rows)
        if update is None:
            update = [c for c in rows[0] if c not in unique_by]
        target = ", ".join(self.quote(c) for c in unique_by)
        if update:
            excluded = self.excluded()
            sets = ", ".join(f"{self.quote(c)} = {excluded}.{self.quote(c)}" for c in update)
            sql += f" ON CONFLICT ({target}) DO UPDATE SET {sets}"
        else:
            sql += f" ON CONFLICT ({target}) DO NOTHING"
        if returning:
            sql += " RETURNING " + ", ".join(self.wrap(c) for c in returning)
        return sql, b

    def excluded(self) -> str:
        return "excluded"

    def compile_update(self, query: Query[Any], values: dict[str, Any]) -> tuple[str, list[Any]]:
        if not values:
            raise ValueError("No values specified for UPDATE")
        b: list[Any] = []
        sets = ", ".join(f"{self.quote(c)} = {self.param(b, v)}" for c, v in values.items())
        sql = f"UPDATE {self.wrap(query.from_)} SET {sets}"
        where = self._write_where(b, query)
        if where:
            sql += f" WHERE {where}"
        return sql, b

    def compile_delete(self, query: Query[Any]) -> tuple[str, list[Any]]:
        b: list[Any] = []
        sql = f"DELETE FROM {self.wrap(query.from_)}"
        where = self._write_where(b, query)
        if where:
            sql += f" WHERE {where}"
        return sql, b

    def _write_where(self, bindings: list[Any], query: Query[Any]) -> str:
        # Joins and limits are applied through a key sub-select
        if query._joins or query._limit is not None:
            key = query._key_column()
            inner = query.clone()
            inner._columns = [key]
            inner._lock = None
            sub, _ = self.compile_select(inner, bindings)
            return f"{self.wrap(key)} IN ({sub})"
        return self.compile_wheres(bindings, query._where_items())


class SQLiteGrammar(Grammar):
    dialect = "sqlite"

    def no_limit(self) -> str:
        return "LIMIT -1"

    def operator(self, op: str) -> str:
        if op == "ilike":
            return "LIKE"
        if op == "not ilike":
            return "NOT LIKE"
        return op.upper()

    def json_path(self, column: str, path: list[str]) -> str:
        return f"json_extract({column}, {self._literal('$.' + '.'.join(path))})"


class PostgresGrammar(Grammar):
    dialect = "postgresql"

    def parameter(self, index: int) -> str:
        return f"${index}"

    def lock(self, mode: str | None) -> str:
        if mode == "update":
            return "FOR UPDATE"
        if mode == "share":
            return "FOR SHARE"
        return ""

    def json_path(self, column: str, path: list[str]) -> str:
        result = column
        for i, key in enumerate(path):
            arrow = "->>" if i == len(path) - 1 else "->"
            result = f"{result}{arrow}{self._literal(key)}"
        return result

    def excluded(self) -> str:
        return "EXCLUDED"


_GRAMMARS: dict[str, Grammar] = {
    "sqlite": SQLiteGrammar(),
    "postgresql": PostgresGrammar(),
}


def grammar_for(dialect: str) -> Grammar:
    """Get the grammar for a dialect name ("sqlite" or "postgresql")."""
    try:
        return _GRAMMARS[dialect]
    except KeyError:
        raise ValueError(f"Unsupported dialect: {dialect!r}") from None


def _is_query(value: Any) -> bool:
    from relkit.query import Query

    return isinstance(value, Query)
