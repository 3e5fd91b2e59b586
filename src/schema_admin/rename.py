"""Previewable, backed-up, transactional bulk rename and drop of tables.

Usage:
    plan = planner.preview("cis_", ["old_widgets", "cis_orders"])
    result = renamer.execute("cis_", ["old_widgets", "cis_orders"], backup=True)

The planner only reads metadata. The executor takes the advisory locks,
creates the backup, then runs every non-no-op statement in a single
transaction; the first failing statement rolls back the whole batch.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog

from schema_admin import metrics
from schema_admin.audit_log import AuditTrail
from schema_admin.errors import BackupFailed, InvalidIdentifier, InvalidPlan, QueryError, RenameFailed
from schema_admin.executor import StatementExecutor
from schema_admin.locks import AdvisoryLockManager
from schema_admin.prefix_audit import PrefixAuditor, TableSnapshot, estimate_seconds, own_prefix
from schema_admin.resolver import IDENTIFIER_RE, validate_identifier

logger = structlog.get_logger()


# =============================================================================
# SQL dialects
# =============================================================================


class Dialect:
    """Renders the DDL used by rename, drop and backup."""

    name = "generic"
    quote_char = '"'

    def quote(self, identifier: str) -> str:
        validate_identifier(identifier)
        return f"{self.quote_char}{identifier}{self.quote_char}"

    def rename_sql(self, source: str, target: str) -> str:
        return f"ALTER TABLE {self.quote(source)} RENAME TO {self.quote(target)}"

    def drop_sql(self, table: str) -> str:
        return f"DROP TABLE {self.quote(table)}"

    def copy_table_sql(self, source: str, target: str) -> list[str]:
        return [f"CREATE TABLE {self.quote(target)} AS SELECT * FROM {self.quote(source)}"]


class DuckDBDialect(Dialect):
    name = "duckdb"


class MySQLDialect(Dialect):
    """For plans exported to a MySQL-compatible server."""

    name = "mysql"
    quote_char = "`"

    def rename_sql(self, source: str, target: str) -> str:
        return f"RENAME TABLE {self.quote(source)} TO {self.quote(target)}"

    def copy_table_sql(self, source: str, target: str) -> list[str]:
        return [
            f"CREATE TABLE {self.quote(target)} LIKE {self.quote(source)}",
            f"INSERT INTO {self.quote(target)} SELECT * FROM {self.quote(source)}",
        ]


DIALECTS: dict[str, Dialect] = {"duckdb": DuckDBDialect(), "mysql": MySQLDialect()}


def get_dialect(name: str) -> Dialect:
    try:
        return DIALECTS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown SQL dialect: {name}") from None


# =============================================================================
# Plans and results
# =============================================================================


@dataclass
class RenameOperation:
    source: str
    target: str | None
    operation: str  # rename, no_change, drop
    sql: str | None
    rollback_sql: str | None
    size_mb: float = 0.0
    row_count: int = 0

    @property
    def estimated_cost(self) -> int:
        return estimate_seconds(self.size_mb, self.row_count, 1)

    @property
    def is_noop(self) -> bool:
        return self.operation == "no_change"

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_name": self.source,
            "new_name": self.target,
            "operation": self.operation,
            "size_mb": self.size_mb,
            "row_count": self.row_count,
            "sql": self.sql,
            "rollback_sql": self.rollback_sql,
            "estimated_cost": self.estimated_cost,
        }


@dataclass
class RenamePlan:
    new_prefix: str | None
    current_prefix: str
    operations: list[RenameOperation] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def actionable(self) -> list[RenameOperation]:
        return [op for op in self.operations if not op.is_noop]

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total_operations": len(self.actionable),
            "tables_affected": len(self.operations),
            "estimated_time_seconds": estimate_seconds(
                sum(op.size_mb for op in self.operations),
                sum(op.row_count for op in self.operations),
                len(self.operations),
            ),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_prefix": self.new_prefix,
            "current_prefix": self.current_prefix,
            "preview": [op.to_dict() for op in self.operations],
            "skipped": self.skipped,
            "summary": self.summary,
        }


@dataclass
class BackupResult:
    tables: dict[str, str] = field(default_factory=dict)  # source -> backup table
    errors: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": self.tables,
            "errors": self.errors,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RenameResult:
    success: bool
    message: str
    dry_run: bool = False
    processed_count: int = 0
    plan: RenamePlan | None = None
    backup: BackupResult | None = None
    execution_log: list[dict[str, Any]] = field(default_factory=list)
    audit_recorded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "dry_run": self.dry_run,
            "processed_count": self.processed_count,
            "plan": self.plan.to_dict() if self.plan else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "execution_log": self.execution_log,
            "audit_recorded": self.audit_recorded,
        }


# =============================================================================
# Backups
# =============================================================================


class BackupStrategy(ABC):
    """Snapshots tables before a destructive batch."""

    @abstractmethod
    def backup(self, executor: StatementExecutor, tables: list[str]) -> BackupResult:
        ...


class CopyTableBackup(BackupStrategy):
    """Copies each table into `<table>_backup_<timestamp>` in the same database."""

    def __init__(self, dialect: Dialect | None = None):
        self.dialect = dialect or DuckDBDialect()

    def backup_name(self, table: str, stamp: str) -> str:
        return f"{table}_backup_{stamp}"

    def backup(self, executor: StatementExecutor, tables: list[str]) -> BackupResult:
        result = BackupResult()
        stamp = result.created_at.strftime("%Y%m%d_%H%M%S")
        for table in tables:
            target = self.backup_name(table, stamp)
            try:
                for sql in self.dialect.copy_table_sql(table, target):
                    executor.execute(sql)
            except QueryError as e:
                result.errors[table] = e.message
                metrics.BACKUPS_TOTAL.labels(status="failed").inc()
                logger.error("table_backup_failed", table=table, backup_table=target, error=e.message)
                continue
            result.tables[table] = target
            metrics.BACKUPS_TOTAL.labels(status="success").inc()
            logger.info("table_backup_created", table=table, backup_table=target)
        return result


# =============================================================================
# Planner
# =============================================================================


class RenamePlanner:
    """Turns a target prefix and a table selection into a RenamePlan."""

    def __init__(self, auditor: PrefixAuditor, dialect: Dialect | None = None):
        self.auditor = auditor
        self.dialect = dialect or DuckDBDialect()

    def new_name(self, table: str, current_prefix: str, new_prefix: str) -> str:
        """
        Strip the current prefix when the table carries it, then prepend
        new_prefix. Tables without the current prefix keep their full name.

        With no current prefix detected, the table's own leading `word_`
        token is replaced instead. A table that already starts with
        new_prefix keeps its name.
        """
        if new_prefix and table.startswith(new_prefix):
            return table
        if current_prefix:
            base = table[len(current_prefix):] if table.startswith(current_prefix) else table
        else:
            token = self._leading_token(table)
            base = table[len(token):] if token else table
        return new_prefix + base

    @staticmethod
    def _leading_token(table: str) -> str | None:
        token = own_prefix(table)
        # Never strip the whole name
        if token and len(token) < len(table):
            return token
        return None

    def preview(
        self,
        new_prefix: str,
        tables: Iterable[str],
        skip_system: bool = True,
        current_prefix: str | None = None,
        snapshots: list[TableSnapshot] | None = None,
    ) -> RenamePlan:
        """
        Plan a rename of the selected tables to new_prefix.

        Unknown tables raise TableNotFound. Two sources mapping to the same
        target, or a target that already exists outside the plan, raise
        InvalidPlan.
        """
        if new_prefix and not IDENTIFIER_RE.match(new_prefix):
            raise InvalidIdentifier(f"Invalid table prefix: {new_prefix!r}")

        snapshots = snapshots if snapshots is not None else self.auditor.list_tables()
        if current_prefix is None:
            current_prefix = self.auditor.infer_prefix(
                s.name for s in snapshots if s.classification == "user"
            ).current_prefix

        plan = RenamePlan(new_prefix=new_prefix, current_prefix=current_prefix)
        for table in dict.fromkeys(tables):
            snapshot = self.auditor.find(table, snapshots)
            if snapshot.classification == "system" and skip_system:
                plan.skipped.append(table)
                continue

            target = self.new_name(table, current_prefix, new_prefix)
            if target == table:
                plan.operations.append(RenameOperation(
                    source=table, target=target, operation="no_change", sql=None, rollback_sql=None,
                    size_mb=snapshot.size_mb, row_count=snapshot.row_count,
                ))
                continue

            validate_identifier(target)
            plan.operations.append(RenameOperation(
                source=table,
                target=target,
                operation="rename",
                sql=self.dialect.rename_sql(table, target),
                rollback_sql=self.dialect.rename_sql(target, table),
                size_mb=snapshot.size_mb,
                row_count=snapshot.row_count,
            ))

        self._check_collisions(plan, {s.name for s in snapshots})
        logger.info("rename_preview_built", new_prefix=new_prefix, **plan.summary)
        return plan

    @staticmethod
    def _check_collisions(plan: RenamePlan, existing: set[str]) -> None:
        renames = plan.actionable
        vacated = {op.source for op in renames}
        seen: set[str] = set()
        for op in renames:
            if op.target in seen:
                raise InvalidPlan(f"Two tables would be renamed to {op.target}")
            seen.add(op.target)
            if op.target in existing and op.target not in vacated:
                raise InvalidPlan(f"Target table already exists: {op.target}")

    def drop_preview(self, tables: Iterable[str], snapshots: list[TableSnapshot] | None = None) -> RenamePlan:
        snapshots = snapshots if snapshots is not None else self.auditor.list_tables()
        plan = RenamePlan(new_prefix=None, current_prefix="")
        for table in dict.fromkeys(tables):
            snapshot = self.auditor.find(table, snapshots)
            if snapshot.classification == "system":
                plan.skipped.append(table)
                continue
            plan.operations.append(RenameOperation(
                source=table,
                target=None,
                operation="drop",
                sql=self.dialect.drop_sql(table),
                rollback_sql=None,
                size_mb=snapshot.size_mb,
                row_count=snapshot.row_count,
            ))
        return plan


# =============================================================================
# Executor
# =============================================================================


class RenameExecutor:
    """Runs rename and drop plans under lock, backup and one transaction."""

    def __init__(
        self,
        executor: StatementExecutor,
        planner: RenamePlanner,
        lock_manager: AdvisoryLockManager | None = None,
        backup_strategy: BackupStrategy | None = None,
        audit: AuditTrail | None = None,
    ):
        self._executor = executor
        self.planner = planner
        self._locks = lock_manager or AdvisoryLockManager()
        self.backup_strategy = backup_strategy or CopyTableBackup(planner.dialect)
        self._audit = audit

    def preview(self, new_prefix: str, tables: Iterable[str], skip_system: bool = True) -> RenamePlan:
        return self.planner.preview(new_prefix, tables, skip_system=skip_system)

    def execute(
        self,
        new_prefix: str,
        tables: Iterable[str],
        backup: bool = True,
        dry_run: bool = False,
        skip_system: bool = True,
    ) -> RenameResult:
        """Preview, then (unless dry_run) back up and apply the renames."""
        plan = self.planner.preview(new_prefix, tables, skip_system=skip_system)
        return self.execute_plan(plan, backup=backup, dry_run=dry_run)

    def drop_tables(self, tables: Iterable[str], backup: bool = True, dry_run: bool = True) -> RenameResult:
        """Drop tables (typically the drop_framework bucket). Dry run by default."""
        plan = self.planner.drop_preview(tables)
        return self.execute_plan(plan, backup=backup, dry_run=dry_run, operation="drop")

    def execute_plan(
        self,
        plan: RenamePlan,
        backup: bool = True,
        dry_run: bool = False,
        operation: str = "rename",
    ) -> RenameResult:
        operations = plan.actionable
        if dry_run:
            logger.info("prefix_operation_dry_run", operation=operation, operations=len(operations))
            return RenameResult(
                success=True,
                message="Dry run completed - no changes made",
                dry_run=True,
                processed_count=len(operations),
                plan=plan,
            )
        if not operations:
            return RenameResult(success=True, message="No changes needed", plan=plan)

        verb = "DROP" if operation == "drop" else "ALTER"
        for op in operations:
            self._executor.gate.check(verb, op.source)

        lock_tables = [op.source for op in operations] + [op.target for op in operations if op.target]
        with self._locks.acquire(operation, lock_tables):
            backup_result = None
            if backup:
                backup_result = self.backup_strategy.backup(self._executor, [op.source for op in operations])
                if not backup_result.success:
                    raise BackupFailed(f"Backup failed for: {', '.join(sorted(backup_result.errors))}")

            execution_log = self._run(plan, operations, operation)

        result = RenameResult(
            success=True,
            message=f"Successfully processed {len(operations)} tables",
            processed_count=len(operations),
            plan=plan,
            backup=backup_result,
            execution_log=execution_log,
        )
        self._record(plan, result, operation)
        return result

    def _run(self, plan: RenamePlan, operations: list[RenameOperation], operation: str) -> list[dict[str, Any]]:
        execution_log: list[dict[str, Any]] = []
        current = None
        try:
            with self._executor.transaction():
                for current in operations:
                    start = time.perf_counter()
                    try:
                        self._executor.execute(current.sql)
                    except QueryError as e:
                        execution_log.append({
                            "operation": current.sql,
                            "source": current.source,
                            "target": current.target,
                            "success": False,
                            "error": e.message,
                        })
                        raise
                    execution_log.append({
                        "operation": current.sql,
                        "source": current.source,
                        "target": current.target,
                        "success": True,
                        "execution_time_ms": round((time.perf_counter() - start) * 1000, 2),
                    })
        except Exception as e:
            metrics.PREFIX_OPERATIONS_TOTAL.labels(operation=operation, status="rolled_back").inc()
            logger.error(
                "prefix_operation_failed",
                operation=operation,
                failed_sql=current.sql if current else None,
                processed=sum(1 for entry in execution_log if entry["success"]),
                error=str(e),
            )
            raise RenameFailed(current.to_dict() if current else {}, e, execution_log) from e

        metrics.PREFIX_OPERATIONS_TOTAL.labels(operation=operation, status="success").inc(len(operations))
        logger.info(
            "prefix_operation_completed",
            operation=operation,
            new_prefix=plan.new_prefix,
            processed=len(operations),
        )
        return execution_log

    def _record(self, plan: RenamePlan, result: RenameResult, operation: str) -> None:
        if self._audit is None:
            return
        timings = {entry["source"]: entry.get("execution_time_ms") for entry in result.execution_log}
        for op in plan.actionable:
            self._audit.record_prefix_operation(
                operation_type=operation,
                source_table=op.source,
                target_table=op.target,
                status="success",
                old_prefix=plan.current_prefix or None,
                new_prefix=plan.new_prefix,
                rows_affected=op.row_count,
                execution_time_ms=timings.get(op.source),
                rollback_sql=op.rollback_sql,
            )
        action = "prefix_management" if operation == "rename" else "prefix_drop"
        result.audit_recorded = self._audit.record(action, {
            "new_prefix": plan.new_prefix,
            "table_count": result.processed_count,
            "backup": result.backup.to_dict() if result.backup else None,
            "execution_log": result.execution_log,
        })
