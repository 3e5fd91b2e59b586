"""Parameterized statement execution over a Connection.

Every statement passes through the AccessGate, is timed, optionally
recorded in the in-memory query log, and reported as slow when it runs
past the configured threshold. Engine failures surface as QueryError.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generator, Iterator, Mapping, Sequence

import duckdb
import structlog

from schema_admin import metrics
from schema_admin.access import AccessGate, SuperAdminGate, Verb
from schema_admin.connection import Connection
from schema_admin.errors import AlreadyInTransaction, QueryError, TransactionStateError
from schema_admin.query_builder import QueryBuilder
from schema_admin.resolver import TableResolver

logger = structlog.get_logger()

Params = Mapping[str, Any] | Sequence[Any] | None

DML_VERBS = frozenset({Verb.INSERT, Verb.UPDATE, Verb.DELETE})


@dataclass
class ResultSet:
    """Rows returned by one statement."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        if not self.rows:
            return None
        return next(iter(self.rows[0].values()), None)

    def column(self, name: str) -> list[Any]:
        return [row[name] for row in self.rows]

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class QueryLogEntry:
    sql: str
    params: Any
    row_count: int
    duration_ms: float
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "sql": self.sql,
            "params": self.params,
            "row_count": self.row_count,
            "duration_ms": round(self.duration_ms, 3),
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class StatementExecutor:
    """
    Executes SQL through one Connection on behalf of one actor.

    Transactions are flat: begin_transaction() inside an open transaction
    raises AlreadyInTransaction, so callers composing batches check
    in_transaction() first.
    """

    def __init__(
        self,
        connection: Connection,
        resolver: TableResolver | None = None,
        gate: AccessGate | None = None,
        profiler_enabled: bool = False,
        slow_query_threshold_ms: float = 500.0,
    ):
        self.connection = connection
        self.resolver = resolver or TableResolver(connection.config.table_prefix)
        self.gate = gate or SuperAdminGate()
        self.profiler_enabled = profiler_enabled
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self._in_transaction = False
        self._query_log: list[QueryLogEntry] = []

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def execute(self, sql: str, params: Params = None) -> ResultSet:
        """Run one parameterized statement and return its result."""
        target = self.gate.check_statement(sql)
        verb_label = target.verb.value if target.verb else "OTHER"
        handle = self.connection.handle

        start = time.perf_counter()
        try:
            if params:
                cursor = handle.execute(sql, params)
            else:
                cursor = handle.execute(sql)
            result = self._to_result(cursor, target.verb)
        except duckdb.Error as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self._record(sql, params, 0, duration_ms, error=str(e))
            metrics.QUERIES_TOTAL.labels(verb=verb_label, status="error").inc()
            logger.error("query_failed", sql=sql, params=_loggable(params), error=str(e))
            raise QueryError(sql, params, str(e)) from e

        duration_ms = (time.perf_counter() - start) * 1000
        self._record(sql, params, result.row_count, duration_ms)
        metrics.QUERIES_TOTAL.labels(verb=verb_label, status="success").inc()
        metrics.QUERY_DURATION.labels(verb=verb_label).observe(duration_ms / 1000)

        if duration_ms > self.slow_query_threshold_ms:
            metrics.SLOW_QUERIES_TOTAL.labels(verb=verb_label).inc()
            logger.warning(
                "slow_query_detected",
                sql=sql,
                params=_loggable(params),
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.slow_query_threshold_ms,
            )
        else:
            logger.debug("query_executed", verb=verb_label, duration_ms=round(duration_ms, 2))

        return result

    def query(self, sql: str) -> ResultSet:
        """Run a statement without parameters."""
        return self.execute(sql)

    def execute_prefixed(self, sql: str, params: Params = None) -> ResultSet:
        """Resolve {logical} table tokens, then execute."""
        return self.execute(self.resolver.rewrite(sql), params)

    def table(self, logical: str) -> str:
        return self.resolver.table(logical)

    @staticmethod
    def _to_result(cursor: duckdb.DuckDBPyConnection, verb: Verb | None) -> ResultSet:
        if cursor.description is None:
            return ResultSet()

        columns = [col[0] for col in cursor.description]
        rows = [dict(zip(columns, row)) for row in cursor.fetchall()]

        # DuckDB reports affected rows of DML as a single "Count" column
        if verb in DML_VERBS and columns == ["Count"]:
            count = rows[0]["Count"] if rows else 0
            return ResultSet(columns=[], rows=[], row_count=int(count or 0))

        return ResultSet(columns=columns, rows=rows, row_count=len(rows))

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def in_transaction(self) -> bool:
        return self._in_transaction

    def begin_transaction(self) -> None:
        if self._in_transaction:
            raise AlreadyInTransaction()
        try:
            self.connection.handle.begin()
        except duckdb.Error as e:
            logger.error("transaction_begin_failed", error=str(e))
            raise QueryError("BEGIN TRANSACTION", None, str(e)) from e
        self._in_transaction = True
        metrics.TRANSACTIONS_ACTIVE.inc()
        logger.debug("transaction_started")

    def commit(self) -> None:
        if not self._in_transaction:
            raise TransactionStateError("No active transaction to commit")
        try:
            self.connection.handle.commit()
        except duckdb.Error as e:
            self._end_transaction("rollback")
            logger.error("transaction_commit_failed", error=str(e))
            self._quiet_rollback()
            raise QueryError("COMMIT", None, str(e)) from e
        self._end_transaction("commit")

    def rollback(self) -> None:
        if not self._in_transaction:
            raise TransactionStateError("No active transaction to roll back")
        try:
            self.connection.handle.rollback()
        except duckdb.Error as e:
            logger.error("transaction_rollback_failed", error=str(e))
            raise QueryError("ROLLBACK", None, str(e)) from e
        finally:
            self._end_transaction("rollback")

    def _end_transaction(self, outcome: str) -> None:
        self._in_transaction = False
        metrics.TRANSACTIONS_ACTIVE.dec()
        metrics.TRANSACTIONS_TOTAL.labels(outcome=outcome).inc()
        logger.debug("transaction_finished", outcome=outcome)

    def _quiet_rollback(self) -> None:
        # A failed COMMIT may leave DuckDB in an aborted transaction
        try:
            self.connection.handle.rollback()
        except duckdb.Error as e:
            logger.warning("transaction_rollback_failed", error=str(e))

    @contextmanager
    def transaction(self) -> Generator["StatementExecutor", None, None]:
        """
        Run a block inside one transaction.

        Commits when the block finishes, rolls back and re-raises when it
        raises. A failing rollback is logged and the original error is the
        one re-raised.
        """
        self.begin_transaction()
        try:
            yield self
        except BaseException as e:
            try:
                self.rollback()
            except QueryError as rollback_error:
                logger.error(
                    "transaction_rollback_after_error_failed",
                    error=str(rollback_error),
                    original_error=str(e),
                )
            raise
        self.commit()

    # -------------------------------------------------------------------------
    # Query log
    # -------------------------------------------------------------------------

    def _record(
        self, sql: str, params: Params, row_count: int, duration_ms: float, error: str | None = None
    ) -> None:
        if not self.profiler_enabled:
            return
        self._query_log.append(
            QueryLogEntry(
                sql=sql,
                params=_loggable(params),
                row_count=row_count,
                duration_ms=duration_ms,
                error=error,
            )
        )

    @property
    def query_log(self) -> list[QueryLogEntry]:
        return list(self._query_log)

    def clear_query_log(self) -> None:
        self._query_log.clear()

    # -------------------------------------------------------------------------
    # Query builder factories
    # -------------------------------------------------------------------------

    def select(self, table: str, columns: Sequence[str] | None = None) -> QueryBuilder:
        builder = QueryBuilder(self, self.resolver.table(table), "select")
        if columns:
            builder.select(columns)
        return builder

    def insert(self, table: str) -> QueryBuilder:
        return QueryBuilder(self, self.resolver.table(table), "insert")

    def update(self, table: str) -> QueryBuilder:
        return QueryBuilder(self, self.resolver.table(table), "update")

    def delete(self, table: str) -> QueryBuilder:
        return QueryBuilder(self, self.resolver.table(table), "delete")

    def for_physical(self, table: str, verb: str = "select") -> QueryBuilder:
        """Builder over an already physical (unprefixed) table name."""
        return QueryBuilder(self, table, verb)


def _loggable(params: Params) -> Any:
    if params is None:
        return None
    if isinstance(params, Mapping):
        return {key: _short(value) for key, value in params.items()}
    return [_short(value) for value in params]


def _short(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str) and len(value) > 200:
        return value[:200] + "..."
    return value

