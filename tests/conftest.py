"""Pytest configuration and fixtures."""

import os

import pytest
import structlog

from schema_admin.access import gate_for
from schema_admin.config import Settings
from schema_admin.connection import Connection, ConnectionConfig
from schema_admin.engine import Engine
from schema_admin.executor import StatementExecutor
from schema_admin.locks import AdvisoryLockManager
from schema_admin.migrations import InMemoryMigrationSource
from schema_admin.resolver import TableResolver

TEST_PREFIX = "cis_"


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep SCHEMA_ADMIN_* variables of the host out of the tests."""
    for key in list(os.environ):
        if key.startswith("SCHEMA_ADMIN_"):
            monkeypatch.delenv(key)
    yield
    # CLI invocations point structlog at the runner's stderr
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path):
    """Settings with every path under a temporary data directory."""
    return Settings(data_dir=tmp_path / "data", table_prefix=TEST_PREFIX)


@pytest.fixture
def connection():
    """Initialized in-memory connection."""
    conn = Connection(ConnectionConfig(database=":memory:", table_prefix=TEST_PREFIX)).initialize()
    yield conn
    conn.close()


@pytest.fixture
def resolver():
    return TableResolver(TEST_PREFIX)


@pytest.fixture
def executor(connection, resolver):
    """Super-admin executor over the in-memory connection."""
    return StatementExecutor(connection, resolver)


@pytest.fixture
def executor_for(connection, resolver):
    """Factory for executors acting as another role."""

    def _make(role, grants=None, protected_tables=("users", "roles")):
        gate = gate_for(role, grants, protected_tables, resolver)
        return StatementExecutor(connection, resolver, gate)

    return _make


@pytest.fixture
def lock_manager(tmp_path):
    return AdvisoryLockManager(tmp_path / "locks", timeout=2.0)


@pytest.fixture
def create_tables(connection):
    """Create physical tables (id INTEGER, name VARCHAR) directly on the handle."""

    def _create(*names, rows=0):
        for name in names:
            connection.handle.execute(f'CREATE TABLE "{name}" (id INTEGER, name VARCHAR)')
            for i in range(rows):
                connection.handle.execute(f'INSERT INTO "{name}" VALUES (?, ?)', [i, f"row-{i}"])

    return _create


@pytest.fixture
def table_names(connection):
    """Current base table names of the in-memory database."""

    def _names():
        rows = connection.handle.execute(
            "SELECT table_name FROM duckdb_tables() WHERE NOT internal ORDER BY table_name"
        ).fetchall()
        return [row[0] for row in rows]

    return _names


@pytest.fixture
def engine(settings):
    """Engine with in-memory migrations and no seeds, acting as super_admin."""
    eng = Engine.from_settings(
        settings,
        migration_source=InMemoryMigrationSource(),
        seed_definitions={},
    )
    yield eng
    eng.close()
