"""Composition root.

Engine builds every component from one Settings object and one actor
(role plus grants). It owns the Connection; everything else receives its
collaborators through constructors.

Usage:
    engine = Engine.from_settings(Settings(), role="admin")
    engine.migrations.migrate()
    report = engine.auditor.analyze()
    engine.close()
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import structlog

from schema_admin.access import AccessGate, gate_for
from schema_admin.audit_log import AuditTrail
from schema_admin.config import Settings
from schema_admin.connection import Connection, ConnectionConfig
from schema_admin.executor import StatementExecutor
from schema_admin.locks import AdvisoryLockManager
from schema_admin.migrations import DirectoryMigrationSource, MigrationLedger, MigrationSource
from schema_admin.prefix_audit import PrefixAuditor
from schema_admin.rename import BackupStrategy, RenameExecutor, RenamePlanner, get_dialect
from schema_admin.resolver import TableResolver
from schema_admin.seeds import SeedDefinition, SeedScheduler, load_seed_definitions

logger = structlog.get_logger()


@dataclass
class Engine:
    settings: Settings
    connection: Connection
    resolver: TableResolver
    gate: AccessGate
    executor: StatementExecutor
    locks: AdvisoryLockManager
    audit: AuditTrail
    migrations: MigrationLedger
    seeds: SeedScheduler
    auditor: PrefixAuditor
    planner: RenamePlanner
    renamer: RenameExecutor

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        role: str = "super_admin",
        grants: Iterable[str] | None = None,
        actor: str | None = None,
        migration_source: MigrationSource | None = None,
        seed_definitions: dict[str, SeedDefinition] | None = None,
        backup_strategy: BackupStrategy | None = None,
        dialect: str = "duckdb",
    ) -> "Engine":
        config = ConnectionConfig.from_settings(settings)
        connection = Connection(config).initialize()

        resolver = TableResolver(settings.table_prefix)
        gate = gate_for(role, grants, settings.protected_tables, resolver)
        executor = StatementExecutor(
            connection,
            resolver,
            gate,
            profiler_enabled=settings.profiler_enabled,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
        )
        locks = AdvisoryLockManager(settings.lock_dir, settings.lock_timeout_seconds)
        audit = AuditTrail(
            executor,
            actor or role,
            table=settings.audit_table,
            operations_table=settings.prefix_operations_table,
        )

        if migration_source is None:
            migration_source = DirectoryMigrationSource(settings.migrations_dir)
        if seed_definitions is None:
            seed_definitions = load_seed_definitions(settings.seeds_dir)

        auditor = PrefixAuditor(
            executor,
            standard_prefix=settings.standard_prefix,
            fallback_prefix=settings.fallback_prefix,
            confidence_threshold=settings.prefix_confidence_threshold,
            engine_tables=[
                settings.migrations_table,
                settings.audit_table,
                settings.prefix_operations_table,
            ],
        )
        planner = RenamePlanner(auditor, get_dialect(dialect))

        engine = cls(
            settings=settings,
            connection=connection,
            resolver=resolver,
            gate=gate,
            executor=executor,
            locks=locks,
            audit=audit,
            migrations=MigrationLedger(executor, migration_source, locks, settings.migrations_table),
            seeds=SeedScheduler(executor, seed_definitions, locks, audit),
            auditor=auditor,
            planner=planner,
            renamer=RenameExecutor(executor, planner, locks, backup_strategy, audit),
        )
        logger.info("engine_initialized", database=config.database, role=gate.role, prefix=resolver.prefix)
        return engine

    def health(self) -> dict:
        """Connection and storage path status."""
        paths = {}
        for name, path in self.settings.storage_paths.items():
            path = Path(path)
            paths[name] = {"path": str(path), "exists": path.exists()}

        connected = self.connection.is_connected()
        return {
            "status": "healthy" if connected else "unhealthy",
            "database": self.connection.config.database,
            "connected": connected,
            "role": self.gate.role,
            "table_prefix": self.resolver.prefix,
            "storage": paths,
        }

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
