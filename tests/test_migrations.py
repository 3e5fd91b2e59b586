"""Tests for the migration ledger."""

import textwrap

import pytest

from schema_admin.errors import InvalidMigration, MigrationFailed, MigrationNotFound
from schema_admin.migrations import (
    DirectoryMigrationSource,
    InMemoryMigrationSource,
    Migration,
    MigrationLedger,
    MigrationSource,
    SqlMigration,
    check_migration,
)

CREATE_ORDERS = SqlMigration(
    "CREATE TABLE {orders} (id INTEGER, status VARCHAR)",
    "DROP TABLE {orders}",
)
CREATE_ITEMS = SqlMigration(
    "CREATE TABLE {items} (id INTEGER, order_id INTEGER)",
    "DROP TABLE {items}",
)
BROKEN = SqlMigration("CREATE TABLE {broken} (id NOT_A_TYPE)", "DROP TABLE {broken}")


@pytest.fixture
def source():
    return InMemoryMigrationSource({
        "2024_01_01_000000_create_orders": CREATE_ORDERS,
        "2024_01_02_000000_create_items": CREATE_ITEMS,
    })


@pytest.fixture
def ledger(executor, source, lock_manager):
    return MigrationLedger(executor, source, lock_manager)


class TestMigrate:
    """Tests for migrate()."""

    def test_applies_pending_in_order(self, ledger, table_names):
        """Test that pending migrations run in name order under one batch."""
        run = ledger.migrate()

        assert run.batch == 1
        assert run.applied == ["2024_01_01_000000_create_orders", "2024_01_02_000000_create_items"]
        assert {"cis_orders", "cis_items"} <= set(table_names())
        assert [row["batch"] for row in ledger.executed()] == [1, 1]

    def test_second_migrate_is_noop(self, ledger):
        """Test that migrating twice leaves the ledger unchanged."""
        ledger.migrate()
        before = ledger.executed()

        run = ledger.migrate()

        assert run.applied == []
        assert run.batch is None
        assert ledger.executed() == before

    def test_new_migration_gets_next_batch(self, ledger, source):
        """Test that a later run uses the next batch number."""
        ledger.migrate()
        source.add("2024_02_01_000000_add_status_index", SqlMigration(
            "CREATE INDEX idx_orders_status ON {orders} (status)",
            "DROP INDEX idx_orders_status",
        ))

        run = ledger.migrate()

        assert run.batch == 2
        assert run.applied == ["2024_02_01_000000_add_status_index"]
        assert ledger.last_batch() == 2

    def test_failure_keeps_earlier_migrations(self, executor, lock_manager, table_names):
        """Test that a non-atomic run keeps what committed before the failure."""
        source = InMemoryMigrationSource({"001_orders": CREATE_ORDERS, "002_broken": BROKEN})
        ledger = MigrationLedger(executor, source, lock_manager)

        with pytest.raises(MigrationFailed) as exc_info:
            ledger.migrate()

        assert exc_info.value.name == "002_broken"
        assert exc_info.value.applied == ["001_orders"]
        assert ledger.executed_names() == {"001_orders"}
        assert "cis_orders" in table_names()

    def test_atomic_failure_applies_nothing(self, executor, lock_manager, table_names):
        """Test that an atomic run rolls back every migration of the run."""
        source = InMemoryMigrationSource({"001_orders": CREATE_ORDERS, "002_broken": BROKEN})
        ledger = MigrationLedger(executor, source, lock_manager)

        with pytest.raises(MigrationFailed) as exc_info:
            ledger.migrate(atomic=True)

        assert exc_info.value.applied == []
        assert ledger.executed_names() == set()
        assert "cis_orders" not in table_names()

    def test_invalid_migration_aborts_before_running(self, executor, lock_manager, table_names):
        """Test that every pending migration is loaded before any runs."""
        source = InMemoryMigrationSource({"001_orders": CREATE_ORDERS, "002_bad": "not a migration"})
        ledger = MigrationLedger(executor, source, lock_manager)

        with pytest.raises(InvalidMigration):
            ledger.migrate()

        assert ledger.executed_names() == set()
        assert "cis_orders" not in table_names()


class TestRollback:
    """Tests for rollback()."""

    def test_rolls_back_last_batch_newest_first(self, ledger, source, table_names):
        """Test that only the last batch is reverted, in reverse order."""
        ledger.migrate()
        source.add("2024_03_01_000000_create_notes", SqlMigration(
            "CREATE TABLE {notes} (id INTEGER)", "DROP TABLE {notes}"
        ))
        ledger.migrate()

        reverted = ledger.rollback()

        assert reverted == ["2024_03_01_000000_create_notes"]
        assert "cis_notes" not in table_names()
        assert "cis_orders" in table_names()

        reverted = ledger.rollback()
        assert reverted == ["2024_01_02_000000_create_items", "2024_01_01_000000_create_orders"]
        assert ledger.executed() == []

    def test_rollback_named(self, ledger, table_names):
        """Test rolling back one named migration."""
        ledger.migrate()

        assert ledger.rollback("2024_01_02_000000_create_items") == ["2024_01_02_000000_create_items"]
        assert "cis_items" not in table_names()
        assert ledger.executed_names() == {"2024_01_01_000000_create_orders"}

    def test_rollback_unknown_name(self, ledger):
        """Test that a name not in the ledger raises MigrationNotFound."""
        ledger.migrate()
        with pytest.raises(MigrationNotFound):
            ledger.rollback("2099_01_01_000000_nope")

    def test_rollback_empty_ledger(self, ledger):
        """Test that rollback with nothing applied returns an empty list."""
        assert ledger.rollback() == []


class TestReporting:
    """Tests for status, validate and history."""

    def test_status(self, ledger):
        """Test that status lists executed and pending migrations."""
        assert ledger.status()["pending"] == [
            "2024_01_01_000000_create_orders",
            "2024_01_02_000000_create_items",
        ]
        ledger.migrate()

        status = ledger.status()
        assert status["pending"] == []
        assert status["last_batch"] == 1
        assert [row["name"] for row in status["executed"]] == [
            "2024_01_01_000000_create_orders",
            "2024_01_02_000000_create_items",
        ]

    def test_validate_reports_invalid_and_missing(self, executor, lock_manager):
        """Test that validate flags broken sources and orphaned ledger rows."""
        source = InMemoryMigrationSource({"001_orders": CREATE_ORDERS})
        ledger = MigrationLedger(executor, source, lock_manager)
        ledger.migrate()

        other = InMemoryMigrationSource({"002_bad": object()})
        results = MigrationLedger(executor, other, lock_manager).validate()

        assert {r["name"]: r["valid"] for r in results} == {"002_bad": False, "001_orders": False}

    def test_history_paginates(self, ledger):
        """Test that history is newest first and paginated."""
        ledger.migrate()

        page = ledger.history(page=1, per_page=1)

        assert page["total"] == 2
        assert page["pages"] == 2
        assert [row["name"] for row in page["items"]] == ["2024_01_02_000000_create_items"]


class TestMigrationSources:
    """Tests for migration discovery and contract checks."""

    def test_directory_source(self, tmp_path, executor, lock_manager, table_names):
        """Test loading `migration` objects and module-level up/down."""
        (tmp_path / "001_orders.py").write_text(textwrap.dedent("""
            from schema_admin.migrations import SqlMigration

            migration = SqlMigration("CREATE TABLE {orders} (id INTEGER)", "DROP TABLE {orders}")
        """))
        (tmp_path / "002_items.py").write_text(textwrap.dedent("""
            def up(executor):
                executor.execute_prefixed("CREATE TABLE {items} (id INTEGER)")

            def down(executor):
                executor.execute_prefixed("DROP TABLE {items}")
        """))
        (tmp_path / "__init__.py").write_text("")

        source = DirectoryMigrationSource(tmp_path)
        assert source.names() == ["001_orders", "002_items"]

        MigrationLedger(executor, source, lock_manager).migrate()
        assert {"cis_orders", "cis_items"} <= set(table_names())

    def test_directory_source_missing_file(self, tmp_path):
        """Test that loading an unknown name raises MigrationNotFound."""
        with pytest.raises(MigrationNotFound):
            DirectoryMigrationSource(tmp_path).load("nope")

    def test_directory_source_without_entry_points(self, tmp_path):
        """Test that a module with neither `migration` nor up/down is invalid."""
        (tmp_path / "001_empty.py").write_text("VALUE = 1\n")
        with pytest.raises(InvalidMigration):
            DirectoryMigrationSource(tmp_path).load("001_empty")

    def test_missing_directory_has_no_migrations(self, tmp_path):
        """Test that a non-existent directory yields no names."""
        assert DirectoryMigrationSource(tmp_path / "absent").names() == []

    def test_base_classes_are_abstract(self):
        """Test that Migration and MigrationSource cannot be used directly."""
        with pytest.raises(TypeError):
            Migration()
        with pytest.raises(TypeError):
            MigrationSource()

    def test_check_migration_instantiates_subclass(self):
        """Test that a Migration subclass is instantiated."""

        class CreateThing(Migration):
            def up(self, executor):
                pass

            def down(self, executor):
                pass

        assert isinstance(check_migration("x", CreateThing), CreateThing)

    def test_check_migration_requires_down(self):
        """Test that a subclass without down() is rejected."""

        class UpOnly(Migration):
            def up(self, executor):
                pass

        with pytest.raises(InvalidMigration):
            check_migration("x", UpOnly)
