"""Fluent builder for single SELECT/INSERT/UPDATE/DELETE statements.

Usage:
    rows = (
        executor.select("orders", ["id", "total"])
        .where("status", "paid")
        .where("total", ">", 100)
        .order_by("id", "DESC")
        .limit(10)
        .get()
    )

Values are always bound as named parameters. Placeholder names are derived
from the clause that owns them (where_0, having_1, insert_<col>,
update_<col>) so the same column can appear in SET and WHERE of one UPDATE.
Identifiers are validated and double-quoted; anything that is not a plain
identifier, a qualified column or a simple aggregate is rejected.
"""

import re
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from schema_admin.errors import InvalidIdentifier, InvalidPlan
from schema_admin.resolver import quote_identifier, validate_identifier

if TYPE_CHECKING:
    from schema_admin.executor import ResultSet, StatementExecutor

OPERATORS = frozenset(
    {"=", "!=", "<>", "<", ">", "<=", ">=", "LIKE", "NOT LIKE", "ILIKE", "NOT ILIKE"}
)
DIRECTIONS = frozenset({"ASC", "DESC"})
JOIN_TYPES = frozenset({"INNER", "LEFT", "RIGHT", "FULL"})

_AGGREGATE_RE = re.compile(
    r"^(COUNT|SUM|AVG|MIN|MAX)\(\s*(\*|[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)\s*\)$",
    re.IGNORECASE,
)
_ALIAS_RE = re.compile(r"^(.+?)\s+AS\s+([A-Za-z_][A-Za-z0-9_]*)$", re.IGNORECASE)

_MISSING = object()


def render_column(expression: str) -> str:
    """Quote a column reference: name, table.name, table.*, *, AGG(col), with optional AS alias."""
    expression = expression.strip()
    alias_match = _ALIAS_RE.match(expression)
    if alias_match:
        return f"{render_column(alias_match.group(1))} AS {quote_identifier(alias_match.group(2))}"

    if expression == "*":
        return "*"

    aggregate = _AGGREGATE_RE.match(expression)
    if aggregate:
        inner = aggregate.group(2)
        inner_sql = "*" if inner == "*" else render_column(inner)
        return f"{aggregate.group(1).upper()}({inner_sql})"

    parts = expression.split(".")
    if len(parts) == 2 and parts[1] == "*":
        return f"{quote_identifier(parts[0])}.*"
    if len(parts) > 2:
        raise InvalidIdentifier(f"Invalid column reference: {expression!r}")
    return ".".join(quote_identifier(part) for part in parts)


class QueryBuilder:
    """
    Stateful plan for one statement against one physical table.

    Instances are meant for a single logical statement. count() and
    first() adjust the projection and limit for their own query and put
    them back afterwards, so get() still returns the original columns.
    """

    def __init__(self, executor: "StatementExecutor", table: str, verb: str = "select"):
        verb = verb.lower()
        if verb not in ("select", "insert", "update", "delete"):
            raise InvalidPlan(f"Unsupported statement type: {verb}")
        self._executor = executor
        self._table = validate_identifier(table)
        self._verb = verb

        self._columns: list[str] = ["*"]
        self._values: dict[str, Any] = {}
        self._wheres: list[str] = []
        self._havings: list[str] = []
        self._params: dict[str, Any] = {}
        self._joins: list[str] = []
        self._order_by: list[str] = []
        self._group_by: list[str] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._param_index = 0

    @property
    def table(self) -> str:
        return self._table

    @property
    def verb(self) -> str:
        return self._verb

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    # -------------------------------------------------------------------------
    # Clauses
    # -------------------------------------------------------------------------

    def select(self, columns: Sequence[str] | str) -> "QueryBuilder":
        if isinstance(columns, str):
            columns = [columns]
        if not columns:
            raise InvalidPlan("select() requires at least one column")
        self._columns = [render_column(col) for col in columns]
        return self

    def _placeholder(self, clause: str, value: Any) -> str:
        name = f"{clause}_{self._param_index}"
        self._param_index += 1
        self._params[name] = value
        return f"${name}"

    def _condition(self, clause: str, column: str, operator: Any, value: Any) -> str:
        if value is _MISSING:
            operator, value = "=", operator
        op = str(operator).upper().strip()
        col = render_column(column)

        if value is None and op in ("=", "IS"):
            return f"{col} IS NULL"
        if value is None and op in ("!=", "<>", "IS NOT"):
            return f"{col} IS NOT NULL"
        if op not in OPERATORS:
            raise InvalidPlan(f"Unsupported operator: {operator!r}")
        return f"{col} {op} {self._placeholder(clause, value)}"

    def where(self, column: str, operator: Any, value: Any = _MISSING) -> "QueryBuilder":
        """where(col, value) or where(col, op, value)."""
        self._wheres.append(self._condition("where", column, operator, value))
        return self

    def where_in(self, column: str, values: Sequence[Any]) -> "QueryBuilder":
        values = list(values)
        if not values:
            self._wheres.append("1 = 0")
            return self
        placeholders = ", ".join(self._placeholder("where", v) for v in values)
        self._wheres.append(f"{render_column(column)} IN ({placeholders})")
        return self

    def where_null(self, column: str) -> "QueryBuilder":
        self._wheres.append(f"{render_column(column)} IS NULL")
        return self

    def where_not_null(self, column: str) -> "QueryBuilder":
        self._wheres.append(f"{render_column(column)} IS NOT NULL")
        return self

    def join(
        self, table: str, first: str, operator: str, second: str, join_type: str = "INNER"
    ) -> "QueryBuilder":
        """Join a logical table; its physical name is resolved now."""
        join_type = join_type.upper()
        if join_type not in JOIN_TYPES:
            raise InvalidPlan(f"Unsupported join type: {join_type}")
        if operator not in ("=", "!=", "<>", "<", ">", "<=", ">="):
            raise InvalidPlan(f"Unsupported join operator: {operator!r}")
        physical = self._executor.resolver.table(table)
        self._joins.append(
            f"{join_type} JOIN {quote_identifier(physical)} "
            f"ON {render_column(first)} {operator} {render_column(second)}"
        )
        return self

    def left_join(self, table: str, first: str, operator: str, second: str) -> "QueryBuilder":
        return self.join(table, first, operator, second, "LEFT")

    def order_by(self, column: str, direction: str = "ASC") -> "QueryBuilder":
        direction = direction.upper()
        if direction not in DIRECTIONS:
            raise InvalidPlan(f"Unsupported sort direction: {direction}")
        self._order_by.append(f"{render_column(column)} {direction}")
        return self

    def group_by(self, *columns: str) -> "QueryBuilder":
        self._group_by.extend(render_column(col) for col in columns)
        return self

    def having(self, column: str, operator: Any, value: Any = _MISSING) -> "QueryBuilder":
        self._havings.append(self._condition("having", column, operator, value))
        return self

    def limit(self, limit: int | None) -> "QueryBuilder":
        if limit is not None and int(limit) < 0:
            raise InvalidPlan("limit must be non-negative")
        self._limit = None if limit is None else int(limit)
        return self

    def offset(self, offset: int | None) -> "QueryBuilder":
        if offset is not None and int(offset) < 0:
            raise InvalidPlan("offset must be non-negative")
        self._offset = None if offset is None else int(offset)
        return self

    def values(self, values: Mapping[str, Any]) -> "QueryBuilder":
        """Column values for INSERT or SET clause for UPDATE."""
        if self._verb not in ("insert", "update"):
            raise InvalidPlan(f"values() is not valid for {self._verb.upper()}")
        for column in values:
            validate_identifier(column)
        self._values.update(values)
        return self

    set = values

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _where_sql(self) -> str:
        return " WHERE " + " AND ".join(self._wheres) if self._wheres else ""

    def _select_sql(self) -> str:
        sql = f"SELECT {', '.join(self._columns)} FROM {quote_identifier(self._table)}"
        if self._joins:
            sql += " " + " ".join(self._joins)
        sql += self._where_sql()
        if self._group_by:
            sql += " GROUP BY " + ", ".join(self._group_by)
        if self._havings:
            sql += " HAVING " + " AND ".join(self._havings)
        if self._order_by:
            sql += " ORDER BY " + ", ".join(self._order_by)
        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        if self._offset is not None:
            sql += f" OFFSET {self._offset}"
        return sql

    def compile(self) -> tuple[str, dict[str, Any]]:
        """Return (sql, params) for the current plan."""
        table = quote_identifier(self._table)

        if self._verb == "select":
            return self._select_sql(), dict(self._params)

        if self._verb == "insert":
            if not self._values:
                raise InvalidPlan("INSERT requires values()")
            columns = ", ".join(quote_identifier(col) for col in self._values)
            placeholders = ", ".join(f"$insert_{col}" for col in self._values)
            params = {f"insert_{col}": value for col, value in self._values.items()}
            return f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", params

        if self._verb == "update":
            if not self._values:
                raise InvalidPlan("UPDATE requires values()")
            assignments = ", ".join(
                f"{quote_identifier(col)} = $update_{col}" for col in self._values
            )
            params = {f"update_{col}": value for col, value in self._values.items()}
            params.update(self._params)
            return f"UPDATE {table} SET {assignments}{self._where_sql()}", params

        return f"DELETE FROM {table}{self._where_sql()}", dict(self._params)

    def to_sql(self) -> str:
        return self.compile()[0]

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(self) -> "ResultSet":
        sql, params = self.compile()
        return self._executor.execute(sql, params)

    def get(self) -> list[dict[str, Any]]:
        return self.execute().rows

    def first(self) -> dict[str, Any] | None:
        """First matching row; the limit is forced to 1 for this call only."""
        saved_limit = self._limit
        self._limit = 1
        try:
            return self.execute().first()
        finally:
            self._limit = saved_limit

    def count(self) -> int:
        """
        Number of rows the SELECT would return.

        The projection, ordering and limit/offset are swapped out for this
        call and restored afterwards, even when the query fails.
        """
        if self._verb != "select":
            raise InvalidPlan("count() is only valid for SELECT")

        saved = (self._columns, self._order_by, self._limit, self._offset)
        try:
            self._order_by, self._limit, self._offset = [], None, None
            if self._group_by:
                inner = self._select_sql()
                sql = f"SELECT COUNT(*) AS count FROM ({inner}) AS counted"
            else:
                self._columns = ["COUNT(*) AS count"]
                sql = self._select_sql()
            result = self._executor.execute(sql, dict(self._params))
        finally:
            self._columns, self._order_by, self._limit, self._offset = saved
        return int(result.scalar() or 0)

    def exists(self) -> bool:
        return self.count() > 0

    def __repr__(self) -> str:
        return f"QueryBuilder({self._verb.upper()} {self._table})"
