"""Versioned schema migrations tracked in an append-only ledger.

A migration is a Python module in the migrations directory, named with a
sortable timestamp prefix (2024_05_01_120000_create_orders.py). It exposes
either a `migration` object (instance or subclass of Migration) or
module-level `up(executor)` and `down(executor)` functions.

Ledger rows are created only after a successful up() and deleted only
after a successful down(), each inside the same transaction as the
migration itself.
"""

import importlib.util
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import structlog

from schema_admin import metrics
from schema_admin.errors import (
    InvalidMigration,
    MigrationFailed,
    MigrationNotFound,
)
from schema_admin.executor import StatementExecutor
from schema_admin.locks import AdvisoryLockManager
from schema_admin.resolver import quote_identifier

logger = structlog.get_logger()


class Migration(ABC):
    """Base class for migrations. Subclasses implement up() and down()."""

    @abstractmethod
    def up(self, executor: StatementExecutor) -> None:
        ...

    @abstractmethod
    def down(self, executor: StatementExecutor) -> None:
        ...


class SqlMigration(Migration):
    """Migration made of SQL statements with {logical} table tokens."""

    def __init__(self, up: Iterable[str] | str, down: Iterable[str] | str = ()):
        self.up_statements = [up] if isinstance(up, str) else list(up)
        self.down_statements = [down] if isinstance(down, str) else list(down)

    def up(self, executor: StatementExecutor) -> None:
        for sql in self.up_statements:
            executor.execute_prefixed(sql)

    def down(self, executor: StatementExecutor) -> None:
        for sql in self.down_statements:
            executor.execute_prefixed(sql)


class FunctionMigration(Migration):
    """Adapter for modules that define up()/down() at module level."""

    def __init__(self, up: Callable[[StatementExecutor], Any], down: Callable[[StatementExecutor], Any]):
        self._up = up
        self._down = down

    def up(self, executor: StatementExecutor) -> None:
        self._up(executor)

    def down(self, executor: StatementExecutor) -> None:
        self._down(executor)


def check_migration(name: str, candidate: Any) -> Migration:
    """Return a Migration instance or raise InvalidMigration."""
    if isinstance(candidate, type) and issubclass(candidate, Migration):
        try:
            candidate = candidate()
        except TypeError as e:
            raise InvalidMigration(name, f"cannot instantiate: {e}") from e
    for method in ("up", "down"):
        if not callable(getattr(candidate, method, None)):
            raise InvalidMigration(name, f"missing {method}() method")
    return candidate


class MigrationSource(ABC):
    """Enumerates available migrations and loads them by name."""

    @abstractmethod
    def names(self) -> list[str]:
        ...

    @abstractmethod
    def load(self, name: str) -> Migration:
        ...


class DirectoryMigrationSource(MigrationSource):
    """Migrations discovered as *.py files in one directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def names(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(
            path.stem for path in self.directory.glob("*.py") if not path.name.startswith("_")
        )

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.py"

    def load(self, name: str) -> Migration:
        path = self.path_for(name)
        if not path.is_file():
            raise MigrationNotFound(name, str(path))

        spec = importlib.util.spec_from_file_location(f"schema_admin_migration_{name}", path)
        if spec is None or spec.loader is None:
            raise InvalidMigration(name, "cannot load module")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise InvalidMigration(name, f"import failed: {e}") from e

        if hasattr(module, "migration"):
            return check_migration(name, module.migration)
        if callable(getattr(module, "up", None)) and callable(getattr(module, "down", None)):
            return FunctionMigration(module.up, module.down)
        raise InvalidMigration(name, "module defines neither `migration` nor up()/down()")


class InMemoryMigrationSource(MigrationSource):
    """Migrations registered programmatically."""

    def __init__(self, migrations: dict[str, Any] | None = None):
        self._migrations: dict[str, Any] = dict(migrations or {})

    def add(self, name: str, migration: Any) -> None:
        self._migrations[name] = migration

    def names(self) -> list[str]:
        return sorted(self._migrations)

    def load(self, name: str) -> Migration:
        if name not in self._migrations:
            raise MigrationNotFound(name)
        return check_migration(name, self._migrations[name])


@dataclass
class MigrationRun:
    """Outcome of one migrate() call."""

    batch: int | None
    applied: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def count(self) -> int:
        return len(self.applied)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch": self.batch,
            "applied": self.applied,
            "count": self.count,
            "duration_ms": round(self.duration_ms, 2),
        }


class MigrationLedger:
    """
    Applies and rolls back migrations, recording them in the ledger table.

    Every mutating call holds the advisory lock ("migrate", <ledger table>).
    """

    def __init__(
        self,
        executor: StatementExecutor,
        source: MigrationSource,
        lock_manager: AdvisoryLockManager | None = None,
        table: str = "migrations",
    ):
        self._executor = executor
        self.source = source
        self._locks = lock_manager or AdvisoryLockManager()
        self.table = table
        self._ready = False

    # -------------------------------------------------------------------------
    # Ledger table
    # -------------------------------------------------------------------------

    def ensure_table(self) -> None:
        if self._ready:
            return
        seq = f"{self.table}_seq"
        self._executor.execute(f"CREATE SEQUENCE IF NOT EXISTS {quote_identifier(seq)}")
        self._executor.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {quote_identifier(self.table)} (
                id BIGINT DEFAULT nextval('{seq}') PRIMARY KEY,
                name VARCHAR NOT NULL UNIQUE,
                batch INTEGER NOT NULL,
                executed_at TIMESTAMP DEFAULT current_timestamp
            )
            """
        )
        self._ready = True

    def _ledger(self, verb: str = "select"):
        return self._executor.for_physical(self.table, verb)

    def executed(self) -> list[dict[str, Any]]:
        """Ledger rows in application order."""
        self.ensure_table()
        return (
            self._ledger()
            .select(["name", "batch", "executed_at"])
            .order_by("batch")
            .order_by("id")
            .get()
        )

    def executed_names(self) -> set[str]:
        return {row["name"] for row in self.executed()}

    def pending(self) -> list[str]:
        """Available migrations not yet in the ledger, ascending."""
        executed = self.executed_names()
        return sorted(name for name in self.source.names() if name not in executed)

    def last_batch(self) -> int | None:
        self.ensure_table()
        value = self._executor.execute(
            f"SELECT MAX(batch) AS batch FROM {quote_identifier(self.table)}"
        ).scalar()
        return int(value) if value is not None else None

    def next_batch(self) -> int:
        return (self.last_batch() or 0) + 1

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def _apply(self, name: str, migration: Migration, batch: int) -> None:
        migration.up(self._executor)
        self._ledger("insert").values({"name": name, "batch": batch}).execute()

    def _revert(self, name: str, migration: Migration) -> None:
        migration.down(self._executor)
        self._ledger("delete").where("name", name).execute()

    def migrate(self, atomic: bool = False) -> MigrationRun:
        """
        Apply every pending migration in name order under one batch number.

        With atomic=False each migration commits on its own; the first
        failure stops the run and raises MigrationFailed whose `applied`
        lists the migrations of this run that stay committed. With
        atomic=True the whole run is one transaction and nothing stays
        applied after a failure.
        """
        self.ensure_table()
        with self._locks.acquire("migrate", [self.table]):
            pending = self.pending()
            if not pending:
                logger.info("migrations_up_to_date")
                return MigrationRun(batch=None)

            # Load everything first: a missing or malformed migration aborts
            # before any of them runs.
            loaded = [(name, self.source.load(name)) for name in pending]
            batch = self.next_batch()
            run = MigrationRun(batch=batch)
            logger.info("migration_run_started", batch=batch, pending=len(pending), atomic=atomic)

            if atomic:
                self._migrate_atomic(loaded, run)
            else:
                self._migrate_each(loaded, run)

        logger.info("migration_run_completed", batch=batch, applied=run.count)
        return run

    def _migrate_each(self, loaded: list[tuple[str, Migration]], run: MigrationRun) -> None:
        for name, migration in loaded:
            start = _now_ms()
            try:
                with self._executor.transaction():
                    self._apply(name, migration, run.batch)
            except Exception as e:
                metrics.MIGRATIONS_TOTAL.labels(direction="up", status="failed").inc()
                logger.error("migration_failed", migration=name, batch=run.batch, error=str(e))
                raise MigrationFailed(name, e, applied=list(run.applied)) from e
            run.applied.append(name)
            run.duration_ms += _now_ms() - start
            metrics.MIGRATIONS_TOTAL.labels(direction="up", status="success").inc()
            logger.info("migration_applied", migration=name, batch=run.batch)

    def _migrate_atomic(self, loaded: list[tuple[str, Migration]], run: MigrationRun) -> None:
        start = _now_ms()
        current = None
        try:
            with self._executor.transaction():
                for name, migration in loaded:
                    current = name
                    self._apply(name, migration, run.batch)
                    run.applied.append(name)
        except Exception as e:
            metrics.MIGRATIONS_TOTAL.labels(direction="up", status="failed").inc()
            logger.error("migration_failed", migration=current, batch=run.batch, error=str(e), atomic=True)
            run.applied.clear()
            raise MigrationFailed(current or "", e, applied=[]) from e
        run.duration_ms = _now_ms() - start
        metrics.MIGRATIONS_TOTAL.labels(direction="up", status="success").inc(len(run.applied))

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def rollback(self, name: str | None = None) -> list[str]:
        """
        Roll back one named migration, or the whole last batch newest first.

        Returns the names rolled back. Each migration is reverted in its own
        transaction; a failure raises MigrationFailed listing the ones that
        were already reverted.
        """
        self.ensure_table()
        with self._locks.acquire("migrate", [self.table]):
            if name is not None:
                row = self._ledger().where("name", name).first()
                if row is None:
                    raise MigrationNotFound(name)
                targets = [name]
            else:
                batch = self.last_batch()
                if batch is None:
                    logger.info("migration_rollback_nothing_to_do")
                    return []
                rows = (
                    self._ledger()
                    .select(["name"])
                    .where("batch", batch)
                    .order_by("id", "DESC")
                    .get()
                )
                targets = [row["name"] for row in rows]

            loaded = [(target, self.source.load(target)) for target in targets]
            reverted: list[str] = []
            for target, migration in loaded:
                try:
                    with self._executor.transaction():
                        self._revert(target, migration)
                except Exception as e:
                    metrics.MIGRATIONS_TOTAL.labels(direction="down", status="failed").inc()
                    logger.error("migration_rollback_failed", migration=target, error=str(e))
                    raise MigrationFailed(target, e, applied=reverted) from e
                reverted.append(target)
                metrics.MIGRATIONS_TOTAL.labels(direction="down", status="success").inc()
                logger.info("migration_rolled_back", migration=target)

        return reverted

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        executed = self.executed()
        executed_names = {row["name"] for row in executed}
        return {
            "executed": executed,
            "pending": sorted(n for n in self.source.names() if n not in executed_names),
            "last_batch": max((row["batch"] for row in executed), default=None),
        }

    def validate(self) -> list[dict[str, Any]]:
        """Check that every available and every applied migration loads and has up()/down()."""
        results = []
        available = self.source.names()
        for name in available:
            try:
                self.source.load(name)
                results.append({"name": name, "valid": True, "error": None})
            except (MigrationNotFound, InvalidMigration) as e:
                results.append({"name": name, "valid": False, "error": str(e)})

        for name in sorted(self.executed_names() - set(available)):
            results.append({"name": name, "valid": False, "error": "applied but missing from source"})
        return results

    def history(self, page: int = 1, per_page: int = 20) -> dict[str, Any]:
        """Paginated ledger rows, newest first."""
        self.ensure_table()
        page = max(page, 1)
        total = self._ledger().count()
        items = (
            self._ledger()
            .select(["name", "batch", "executed_at"])
            .order_by("id", "DESC")
            .limit(per_page)
            .offset((page - 1) * per_page)
            .get()
        )
        return {
            "items": items,
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": math.ceil(total / per_page) if per_page else 0,
        }


def _now_ms() -> float:
    return time.perf_counter() * 1000
