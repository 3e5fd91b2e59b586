"""Dependency-ordered data seeding.

A seed inserts reference data into one logical table. Seeds declare the
seeds they depend on and an idempotency probe: a column plus the marker
values that are present once the seed has run. The scheduler resolves the
dependency graph, skips seeds whose probe is satisfied (unless forced) and
runs the whole batch in one transaction.

Seed definitions come from Python code or from YAML files:

    name: roles
    title: User Roles
    description: System roles
    table: user_roles
    dependencies: []
    probe:
      column: role_name
      values: [super_admin, admin, user]
    rows:
      - {role_name: super_admin, display_name: Super Administrator}
      - {role_name: admin, display_name: Administrator}
      - {role_name: user, display_name: Standard User}
"""

import importlib.util
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import structlog
import yaml

from schema_admin import metrics
from schema_admin.audit_log import AuditTrail
from schema_admin.errors import (
    CircularDependency,
    ConfirmationRequired,
    InvalidPlan,
    SchemaAdminError,
    SeedFailed,
    UnknownSeed,
)
from schema_admin.executor import StatementExecutor
from schema_admin.locks import AdvisoryLockManager

logger = structlog.get_logger()

SeedApply = Callable[[StatementExecutor, bool], Any]


@dataclass
class SeedDefinition:
    """One named seed over one logical table."""

    name: str
    table: str
    apply: SeedApply
    dependencies: list[str] = field(default_factory=list)
    probe_column: str | None = None
    probe_values: list[Any] = field(default_factory=list)
    title: str = ""
    description: str = ""

    @property
    def expected_count(self) -> int:
        return len(set(self.probe_values))

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title or self.name,
            "description": self.description,
            "table": self.table,
            "dependencies": list(self.dependencies),
            "probe_column": self.probe_column,
            "expected_count": self.expected_count,
        }


class RowsSeed:
    """apply() for seeds that insert a fixed list of rows."""

    def __init__(self, table: str, rows: list[dict[str, Any]], probe_column: str | None = None):
        self.table = table
        self.rows = rows
        self.probe_column = probe_column

    def __call__(self, executor: StatementExecutor, force: bool) -> dict[str, Any]:
        rows = self.rows
        if self.probe_column:
            markers = [row[self.probe_column] for row in rows if self.probe_column in row]
            if force and markers:
                executor.delete(self.table).where_in(self.probe_column, markers).execute()
            elif markers:
                existing = {
                    row[self.probe_column]
                    for row in executor.select(self.table, [self.probe_column])
                    .where_in(self.probe_column, markers)
                    .get()
                }
                rows = [row for row in rows if row.get(self.probe_column) not in existing]

        for row in rows:
            executor.insert(self.table).values(row).execute()
        return {"records_inserted": len(rows), "details": {"rows": len(self.rows)}}


def rows_seed(
    name: str,
    table: str,
    rows: list[dict[str, Any]],
    probe_column: str | None = None,
    probe_values: list[Any] | None = None,
    dependencies: Iterable[str] = (),
    title: str = "",
    description: str = "",
) -> SeedDefinition:
    """Build a SeedDefinition that inserts rows, probing on probe_column."""
    if probe_values is None and probe_column:
        probe_values = [row[probe_column] for row in rows if probe_column in row]
    return SeedDefinition(
        name=name,
        table=table,
        apply=RowsSeed(table, rows, probe_column),
        dependencies=list(dependencies),
        probe_column=probe_column,
        probe_values=list(probe_values or []),
        title=title,
        description=description,
    )


def _definition_from_mapping(data: dict[str, Any], origin: Path) -> SeedDefinition:
    try:
        name = data["name"]
        table = data["table"]
    except KeyError as e:
        raise InvalidPlan(f"Seed definition in {origin} is missing {e.args[0]!r}") from e
    probe = data.get("probe") or {}
    return rows_seed(
        name=name,
        table=table,
        rows=list(data.get("rows") or []),
        probe_column=probe.get("column"),
        probe_values=probe.get("values"),
        dependencies=data.get("dependencies") or [],
        title=data.get("title", ""),
        description=data.get("description", ""),
    )


def load_seed_definitions(directory: Path) -> dict[str, SeedDefinition]:
    """
    Discover seeds in a directory.

    *.yaml / *.yml files hold one definition, or a list under `seeds:`.
    *.py modules expose `seeds` (a list of SeedDefinition) or `seed`.
    """
    directory = Path(directory)
    definitions: dict[str, SeedDefinition] = {}
    if not directory.exists():
        return definitions

    for path in sorted(directory.iterdir()):
        if path.name.startswith("_"):
            continue
        found: list[SeedDefinition] = []
        if path.suffix in (".yaml", ".yml"):
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            entries = data.get("seeds", [data]) if isinstance(data, dict) else data
            found = [_definition_from_mapping(entry, path) for entry in entries]
        elif path.suffix == ".py":
            spec = importlib.util.spec_from_file_location(f"schema_admin_seed_{path.stem}", path)
            if spec is None or spec.loader is None:
                continue
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            found = list(getattr(module, "seeds", []))
            if hasattr(module, "seed"):
                found.append(module.seed)

        for definition in found:
            if definition.name in definitions:
                raise InvalidPlan(f"Duplicate seed name {definition.name!r} in {path}")
            definitions[definition.name] = definition

    logger.debug("seed_definitions_loaded", directory=str(directory), count=len(definitions))
    return definitions


@dataclass
class SeedResult:
    name: str
    skipped: bool = False
    records_inserted: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "skipped": self.skipped,
            "records_inserted": self.records_inserted,
            "details": self.details,
        }


@dataclass
class SeedRun:
    """Outcome of execute_seed()."""

    execution_order: list[str]
    dry_run: bool = False
    results: dict[str, SeedResult] = field(default_factory=dict)
    operations: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def total_records(self) -> int:
        return sum(r.records_inserted for r in self.results.values())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "dry_run": self.dry_run,
            "execution_order": self.execution_order,
        }
        if self.dry_run:
            data["operations"] = self.operations
        else:
            data["results"] = {name: r.to_dict() for name, r in self.results.items()}
            data["total_records"] = self.total_records
            data["duration_ms"] = round(self.duration_ms, 2)
        return data


class SeedScheduler:
    """Resolves and runs seeds against one executor."""

    def __init__(
        self,
        executor: StatementExecutor,
        definitions: dict[str, SeedDefinition] | Iterable[SeedDefinition],
        lock_manager: AdvisoryLockManager | None = None,
        audit: AuditTrail | None = None,
    ):
        self._executor = executor
        if not isinstance(definitions, dict):
            definitions = {d.name: d for d in definitions}
        self.definitions: dict[str, SeedDefinition] = dict(definitions)
        self._locks = lock_manager or AdvisoryLockManager()
        self._audit = audit

    def get(self, name: str) -> SeedDefinition:
        try:
            return self.definitions[name]
        except KeyError:
            raise UnknownSeed(name) from None

    # -------------------------------------------------------------------------
    # Dependency resolution
    # -------------------------------------------------------------------------

    def resolve_dependencies(self, names: Iterable[str]) -> list[str]:
        """
        Topological, duplicate-free execution order for names and all their dependencies.

        A seed revisited while still on the active DFS path is a cycle and
        raises CircularDependency naming it.
        """
        resolved: list[str] = []
        visiting: set[str] = set()
        for name in names:
            self._visit(name, resolved, visiting)
        return resolved

    def _visit(self, name: str, resolved: list[str], visiting: set[str]) -> None:
        if name in visiting:
            raise CircularDependency(name)
        if name in resolved:
            return
        definition = self.get(name)
        visiting.add(name)
        for dependency in definition.dependencies:
            self._visit(dependency, resolved, visiting)
        resolved.append(name)
        visiting.discard(name)

    # -------------------------------------------------------------------------
    # Probing
    # -------------------------------------------------------------------------

    def _table_exists(self, physical: str) -> bool:
        count = self._executor.execute(
            "SELECT COUNT(*) AS count FROM information_schema.tables WHERE table_name = $table",
            {"table": physical},
        ).scalar()
        return bool(count)

    def check_status(self, definition: SeedDefinition) -> dict[str, Any]:
        """Probe one seed: seeded, partial, table_missing or error."""
        try:
            return self._probe(definition)
        except SchemaAdminError as e:
            return {
                "status": "error",
                "seeded": False,
                "record_count": 0,
                "can_seed": False,
                "message": f"Error checking status: {e}",
            }

    def _probe(self, definition: SeedDefinition) -> dict[str, Any]:
        """
        Seeded means every expected marker value is present in the probe
        column, counted by distinct value so duplicate rows of one marker
        never stand in for a missing one. Query failures propagate.
        """
        physical = self._executor.table(definition.table)
        if not self._table_exists(physical):
            return {
                "status": "table_missing",
                "seeded": False,
                "record_count": 0,
                "can_seed": False,
                "message": "Table does not exist",
            }
        if not definition.probe_column or not definition.probe_values:
            return {
                "status": "partial",
                "seeded": False,
                "record_count": 0,
                "expected_count": 0,
                "can_seed": True,
                "message": "No idempotency probe defined",
            }

        expected = set(definition.probe_values)
        rows = (
            self._executor.select(definition.table, [definition.probe_column])
            .where_in(definition.probe_column, list(expected))
            .group_by(definition.probe_column)
            .get()
        )
        found = {row[definition.probe_column] for row in rows} & expected
        seeded = found == expected
        return {
            "status": "seeded" if seeded else "partial",
            "seeded": seeded,
            "record_count": len(found),
            "expected_count": len(expected),
            "can_seed": True,
            "message": "Fully seeded" if seeded else f"Partial ({len(found)}/{len(expected)})",
        }

    def status(self) -> dict[str, Any]:
        seeds = {}
        for name, definition in sorted(self.definitions.items()):
            seeds[name] = {**definition.describe(), **self.check_status(definition)}

        summary = {"total": len(seeds), "seeded": 0, "partial": 0, "missing": 0, "errors": 0}
        buckets = {"seeded": "seeded", "partial": "partial", "table_missing": "missing", "error": "errors"}
        for info in seeds.values():
            summary[buckets[info["status"]]] += 1

        return {"seeds": seeds, "summary": summary, "history": self._history()}

    def _history(self) -> list[dict[str, Any]]:
        if self._audit is None:
            return []
        try:
            return self._audit.recent(limit=20, action="seed_management")
        except SchemaAdminError as e:
            logger.warning("seed_history_unavailable", error=str(e))
            return []

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def preview(self, order: list[str]) -> list[dict[str, Any]]:
        operations = []
        for name in order:
            definition = self.definitions[name]
            status = self.check_status(definition)
            operations.append({
                "seed": name,
                "name": definition.title or name,
                "table": definition.table,
                "current_status": status["status"],
                "will_execute": not status["seeded"],
                "expected_records": definition.expected_count,
            })
        return operations

    def execute_seed(
        self, names: Iterable[str], force: bool = False, dry_run: bool = False
    ) -> SeedRun:
        """
        Run seeds and their dependencies in topological order.

        The whole batch runs in one transaction. The first failure rolls
        everything back and raises SeedFailed naming the seed.
        """
        names = list(names)
        order = self.resolve_dependencies(names)

        if dry_run:
            logger.info("seed_dry_run", execution_order=order)
            return SeedRun(execution_order=order, dry_run=True, operations=self.preview(order))

        tables = [self._executor.table(self.definitions[name].table) for name in order]
        run = SeedRun(execution_order=order)
        start = time.perf_counter()

        with self._locks.acquire("seed", tables):
            current = None
            try:
                with self._executor.transaction():
                    for current in order:
                        run.results[current] = self._execute_single(self.definitions[current], force)
            except Exception as e:
                metrics.SEEDS_TOTAL.labels(status="failed").inc()
                logger.error("seed_failed", seed=current, error=str(e))
                raise SeedFailed(current, e, {n: r.to_dict() for n, r in run.results.items()}) from e

        run.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "seed_batch_completed",
            execution_order=order,
            total_records=run.total_records,
            duration_ms=round(run.duration_ms, 2),
        )

        if self._audit is not None:
            self._audit.record("seed_management", {
                "seeds_executed": names,
                "execution_order": order,
                "results": {n: r.to_dict() for n, r in run.results.items()},
                "total_records": run.total_records,
            })
        return run

    def _execute_single(self, definition: SeedDefinition, force: bool) -> SeedResult:
        if not force:
            status = self._probe(definition)
            if status["seeded"]:
                metrics.SEEDS_TOTAL.labels(status="skipped").inc()
                logger.info("seed_skipped", seed=definition.name, reason="already seeded")
                return SeedResult(name=definition.name, skipped=True)

        outcome = definition.apply(self._executor, force)
        if isinstance(outcome, dict):
            inserted = int(outcome.get("records_inserted", 0))
            details = outcome.get("details", {})
        else:
            inserted = int(outcome or 0)
            details = {}

        metrics.SEEDS_TOTAL.labels(status="seeded").inc()
        logger.info("seed_applied", seed=definition.name, records_inserted=inserted, force=force)
        return SeedResult(name=definition.name, records_inserted=inserted, details=details)

    def clear_seed(self, names: Iterable[str], confirm: bool = False) -> dict[str, dict[str, Any]]:
        """Delete probe-matched rows of each seed in one transaction."""
        if not confirm:
            raise ConfirmationRequired("Clear operation requires confirmation")

        definitions = [self.get(name) for name in names]
        tables = [self._executor.table(d.table) for d in definitions]
        results: dict[str, dict[str, Any]] = {}

        with self._locks.acquire("seed", tables):
            with self._executor.transaction():
                for definition in definitions:
                    if not definition.probe_column or not definition.probe_values:
                        results[definition.name] = {"records_deleted": 0, "message": "No probe defined"}
                        continue
                    deleted = (
                        self._executor.delete(definition.table)
                        .where_in(definition.probe_column, definition.probe_values)
                        .execute()
                        .row_count
                    )
                    results[definition.name] = {"records_deleted": deleted}
                    logger.info("seed_cleared", seed=definition.name, records_deleted=deleted)

        if self._audit is not None:
            self._audit.record("seed_clear", {"seeds": [d.name for d in definitions], "results": results})
        return results
