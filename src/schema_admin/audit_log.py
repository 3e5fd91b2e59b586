"""Audit trail tables written after completed batches.

Two tables are kept, both created on first use:

- audit_log: one row per completed batch (actor, action, JSON details)
- prefix_operations: one row per executed rename/drop, with the SQL
  needed to undo it

Writes are best-effort. A failed audit write is logged and reported as
False; it never turns an already committed operation into a failure.
"""

import json
import uuid
from typing import Any

import structlog

from schema_admin.errors import SchemaAdminError
from schema_admin.executor import StatementExecutor
from schema_admin.resolver import quote_identifier

logger = structlog.get_logger()


class AuditTrail:
    """Best-effort writer and reader for the audit tables."""

    def __init__(
        self,
        executor: StatementExecutor,
        actor: str,
        table: str = "audit_log",
        operations_table: str = "prefix_operations",
    ):
        self._executor = executor
        self.actor = actor
        self.table = table
        self.operations_table = operations_table
        self._schema_ready = False

    def ensure_schema(self) -> None:
        """Create the audit tables if they do not exist yet."""
        if self._schema_ready:
            return
        audit = quote_identifier(self.table)
        ops = quote_identifier(self.operations_table)
        seq = quote_identifier(f"{self.table}_seq")

        self._executor.execute(f"CREATE SEQUENCE IF NOT EXISTS {seq}")
        self._executor.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {audit} (
                id BIGINT DEFAULT nextval('{self.table}_seq') PRIMARY KEY,
                actor VARCHAR NOT NULL,
                action VARCHAR NOT NULL,
                details JSON,
                created_at TIMESTAMP DEFAULT current_timestamp
            )
            """
        )
        self._executor.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {ops} (
                operation_id VARCHAR PRIMARY KEY,
                operation_type VARCHAR NOT NULL,
                source_table VARCHAR,
                target_table VARCHAR,
                old_prefix VARCHAR,
                new_prefix VARCHAR,
                dry_run BOOLEAN DEFAULT false,
                status VARCHAR NOT NULL,
                rows_affected BIGINT DEFAULT 0,
                execution_time_ms DOUBLE,
                error_message VARCHAR,
                rollback_sql VARCHAR,
                executed_by VARCHAR,
                created_at TIMESTAMP DEFAULT current_timestamp
            )
            """
        )
        self._schema_ready = True

    def record(self, action: str, details: dict[str, Any] | None = None) -> bool:
        """Write one audit record. Returns False (and logs) on failure."""
        try:
            self.ensure_schema()
            self._executor.execute(
                f"INSERT INTO {quote_identifier(self.table)} (actor, action, details) "
                "VALUES ($actor, $action, $details)",
                {
                    "actor": self.actor,
                    "action": action,
                    "details": json.dumps(details or {}, default=str),
                },
            )
        except SchemaAdminError as e:
            logger.warning("audit_record_failed", action=action, actor=self.actor, error=str(e))
            return False
        logger.info("audit_recorded", action=action, actor=self.actor)
        return True

    def record_prefix_operation(
        self,
        operation_type: str,
        source_table: str,
        target_table: str | None,
        status: str,
        old_prefix: str | None = None,
        new_prefix: str | None = None,
        dry_run: bool = False,
        rows_affected: int = 0,
        execution_time_ms: float | None = None,
        error_message: str | None = None,
        rollback_sql: str | None = None,
    ) -> str | None:
        """Write one prefix_operations row; returns its id, or None on failure."""
        operation_id = str(uuid.uuid4())
        try:
            self.ensure_schema()
            self._executor.execute(
                f"""
                INSERT INTO {quote_identifier(self.operations_table)}
                (operation_id, operation_type, source_table, target_table, old_prefix,
                 new_prefix, dry_run, status, rows_affected, execution_time_ms,
                 error_message, rollback_sql, executed_by)
                VALUES ($operation_id, $operation_type, $source_table, $target_table,
                        $old_prefix, $new_prefix, $dry_run, $status, $rows_affected,
                        $execution_time_ms, $error_message, $rollback_sql, $executed_by)
                """,
                {
                    "operation_id": operation_id,
                    "operation_type": operation_type,
                    "source_table": source_table,
                    "target_table": target_table,
                    "old_prefix": old_prefix,
                    "new_prefix": new_prefix,
                    "dry_run": dry_run,
                    "status": status,
                    "rows_affected": rows_affected,
                    "execution_time_ms": execution_time_ms,
                    "error_message": error_message,
                    "rollback_sql": rollback_sql,
                    "executed_by": self.actor,
                },
            )
        except SchemaAdminError as e:
            logger.warning(
                "prefix_operation_record_failed",
                operation_type=operation_type,
                source_table=source_table,
                error=str(e),
            )
            return None
        return operation_id

    def recent(self, limit: int = 50, action: str | None = None) -> list[dict[str, Any]]:
        """Latest audit records, newest first."""
        self.ensure_schema()
        query = self._executor.for_physical(self.table).order_by("id", "DESC").limit(limit)
        if action:
            query.where("action", action)
        rows = query.get()
        for row in rows:
            if isinstance(row.get("details"), str):
                row["details"] = json.loads(row["details"])
        return rows

    def prefix_history(self, limit: int = 50) -> list[dict[str, Any]]:
        """Latest prefix operations, newest first."""
        self.ensure_schema()
        return (
            self._executor.for_physical(self.operations_table)
            .order_by("created_at", "DESC")
            .limit(limit)
            .get()
        )
