"""Tests for seed definitions and the seed scheduler."""

import textwrap

import pytest
import yaml

from schema_admin.audit_log import AuditTrail
from schema_admin.errors import (
    CircularDependency,
    ConfirmationRequired,
    InvalidPlan,
    SeedFailed,
    UnknownSeed,
)
from schema_admin.seeds import SeedDefinition, SeedScheduler, load_seed_definitions, rows_seed

ROLES = [
    {"id": 1, "name": "super_admin"},
    {"id": 2, "name": "admin"},
    {"id": 3, "name": "viewer"},
]


@pytest.fixture
def schema(connection):
    connection.handle.execute('CREATE TABLE "cis_roles" (id INTEGER, name VARCHAR)')
    connection.handle.execute('CREATE TABLE "cis_users" (id INTEGER, email VARCHAR, role_id INTEGER)')


def roles_seed():
    return rows_seed("roles", "roles", ROLES, probe_column="name")


def users_seed():
    return rows_seed(
        "users",
        "users",
        [{"id": 1, "email": "root@example.com", "role_id": 1}],
        probe_column="email",
        dependencies=["roles"],
    )


def recording_seed(name, calls, dependencies=()):
    def apply(executor, force):
        calls.append(name)
        return 0

    return SeedDefinition(name=name, table="roles", apply=apply, dependencies=list(dependencies))


@pytest.fixture
def audit(executor):
    return AuditTrail(executor, "tester")


@pytest.fixture
def scheduler(executor, lock_manager, audit, schema):
    return SeedScheduler(executor, [roles_seed(), users_seed()], lock_manager, audit)


class TestDependencyResolution:
    """Tests for resolve_dependencies()."""

    def test_topological_order(self, executor):
        """Test that dependencies come first and appear once."""
        calls = []
        scheduler = SeedScheduler(executor, [
            recording_seed("roles", calls),
            recording_seed("users", calls, ["roles"]),
            recording_seed("user_roles", calls, ["users", "roles"]),
        ])

        assert scheduler.resolve_dependencies(["user_roles"]) == ["roles", "users", "user_roles"]
        assert scheduler.resolve_dependencies(["roles", "user_roles", "users"]) == [
            "roles",
            "users",
            "user_roles",
        ]

    def test_cycle_raises_without_running(self, executor):
        """Test that a cycle raises CircularDependency before any seed runs."""
        calls = []
        scheduler = SeedScheduler(executor, [
            recording_seed("a", calls, ["b"]),
            recording_seed("b", calls, ["a"]),
        ])

        with pytest.raises(CircularDependency):
            scheduler.execute_seed(["a"])
        assert calls == []

    def test_unknown_dependency(self, executor):
        """Test that a missing dependency raises UnknownSeed naming it."""
        calls = []
        scheduler = SeedScheduler(executor, [recording_seed("users", calls, ["roles"])])

        with pytest.raises(UnknownSeed) as exc_info:
            scheduler.resolve_dependencies(["users"])
        assert exc_info.value.name == "roles"


class TestExecuteSeed:
    """Tests for execute_seed()."""

    def test_runs_dependencies_first(self, scheduler, executor):
        """Test that running users also seeds roles."""
        run = scheduler.execute_seed(["users"])

        assert run.execution_order == ["roles", "users"]
        assert run.results["roles"].records_inserted == 3
        assert run.results["users"].records_inserted == 1
        assert run.total_records == 4
        assert executor.select("users").count() == 1

    def test_second_run_skips(self, scheduler, executor):
        """Test that seeded tables are skipped without force."""
        scheduler.execute_seed(["roles"])
        run = scheduler.execute_seed(["roles"])

        assert run.results["roles"].skipped
        assert executor.select("roles").count() == 3

    def test_force_reapplies(self, scheduler, executor):
        """Test that force replaces probe rows instead of duplicating them."""
        scheduler.execute_seed(["roles"])
        run = scheduler.execute_seed(["roles"], force=True)

        assert not run.results["roles"].skipped
        assert run.results["roles"].records_inserted == 3
        assert executor.select("roles").count() == 3

    def test_duplicate_marker_rows_do_not_count_as_seeded(self, scheduler, executor):
        """Test that repeated rows of one marker do not hide a missing marker."""
        executor.insert("roles").values({"id": 2, "name": "admin"}).execute()
        executor.insert("roles").values({"id": 2, "name": "admin"}).execute()
        executor.insert("roles").values({"id": 2, "name": "admin"}).execute()

        run = scheduler.execute_seed(["roles"])

        assert not run.results["roles"].skipped
        assert run.results["roles"].records_inserted == 2
        names = {row["name"] for row in executor.select("roles", ["name"]).get()}
        assert names == {"super_admin", "admin", "viewer"}

    def test_probe_failure_aborts_batch(self, executor, lock_manager, schema):
        """Test that a probe on a missing column raises SeedFailed and commits nothing."""
        scheduler = SeedScheduler(executor, [
            rows_seed("roles", "roles", [{"id": 1, "rolename": "admin"}], probe_column="rolename"),
        ], lock_manager)

        with pytest.raises(SeedFailed) as exc_info:
            scheduler.execute_seed(["roles"])

        assert exc_info.value.name == "roles"
        assert not executor.in_transaction()
        assert executor.select("roles").count() == 0

    def test_failure_rolls_back_batch(self, executor, lock_manager, schema):
        """Test that a failing seed rolls back the seeds before it."""

        def explode(executor, force):
            raise RuntimeError("boom")

        scheduler = SeedScheduler(executor, [
            roles_seed(),
            SeedDefinition(name="users", table="users", apply=explode, dependencies=["roles"]),
        ], lock_manager)

        with pytest.raises(SeedFailed) as exc_info:
            scheduler.execute_seed(["users"])

        assert exc_info.value.name == "users"
        assert executor.select("roles").count() == 0

    def test_dry_run_writes_nothing(self, scheduler, executor):
        """Test that dry_run reports the plan only."""
        run = scheduler.execute_seed(["users"], dry_run=True)

        assert run.dry_run
        assert [op["seed"] for op in run.operations] == ["roles", "users"]
        assert all(op["will_execute"] for op in run.operations)
        assert executor.select("roles").count() == 0

    def test_audit_record_written(self, scheduler, audit):
        """Test that a completed batch is written to the audit log."""
        scheduler.execute_seed(["roles"])

        records = audit.recent(action="seed_management")
        assert len(records) == 1
        assert records[0]["actor"] == "tester"
        assert records[0]["details"]["execution_order"] == ["roles"]


class TestStatus:
    """Tests for check_status() and status()."""

    def test_seeded_and_partial(self, scheduler):
        """Test probe-based status before and after seeding."""
        assert scheduler.check_status(scheduler.get("roles"))["status"] == "partial"
        scheduler.execute_seed(["roles"])

        status = scheduler.check_status(scheduler.get("roles"))
        assert status["status"] == "seeded"
        assert status["record_count"] == 3

    def test_partial_when_a_marker_is_missing(self, scheduler, executor):
        """Test that seeded requires every marker value, not a row count."""
        for role_id in (1, 2, 3):
            executor.insert("roles").values({"id": role_id, "name": "admin"}).execute()

        status = scheduler.check_status(scheduler.get("roles"))

        assert status["status"] == "partial"
        assert status["record_count"] == 1
        assert status["expected_count"] == 3

    def test_probe_error_reported(self, executor, schema):
        """Test that status() reports a broken probe instead of raising."""
        scheduler = SeedScheduler(executor, [
            rows_seed("roles", "roles", [{"rolename": "admin"}], probe_column="rolename"),
        ])
        assert scheduler.status()["seeds"]["roles"]["status"] == "error"

    def test_table_missing(self, executor):
        """Test that a seed over a missing table reports table_missing."""
        scheduler = SeedScheduler(executor, [rows_seed("ghosts", "ghosts", [{"id": 1}], probe_column="id")])
        assert scheduler.check_status(scheduler.get("ghosts"))["status"] == "table_missing"

    def test_seed_without_probe_is_partial(self, executor, schema):
        """Test that a seed without probe values cannot be reported as seeded."""
        scheduler = SeedScheduler(executor, [rows_seed("roles", "roles", ROLES)])
        status = scheduler.check_status(scheduler.get("roles"))
        assert status["status"] == "partial"
        assert not status["seeded"]

    def test_summary(self, scheduler):
        """Test the status summary and history."""
        scheduler.execute_seed(["roles"])

        status = scheduler.status()

        assert status["summary"] == {"total": 2, "seeded": 1, "partial": 1, "missing": 0, "errors": 0}
        assert status["seeds"]["users"]["dependencies"] == ["roles"]
        assert len(status["history"]) == 1


class TestClearSeed:
    """Tests for clear_seed()."""

    def test_requires_confirmation(self, scheduler):
        """Test that clearing without confirm raises."""
        with pytest.raises(ConfirmationRequired):
            scheduler.clear_seed(["roles"])

    def test_deletes_probe_rows(self, scheduler, executor):
        """Test that only probe-matched rows are deleted."""
        scheduler.execute_seed(["roles"])
        executor.insert("roles").values({"id": 99, "name": "custom"}).execute()

        results = scheduler.clear_seed(["roles"], confirm=True)

        assert results == {"roles": {"records_deleted": 3}}
        assert executor.select("roles", ["name"]).get() == [{"name": "custom"}]


class TestLoadSeedDefinitions:
    """Tests for discovering seeds on disk."""

    def test_yaml_and_python(self, tmp_path):
        """Test loading YAML mappings, YAML lists and Python modules."""
        (tmp_path / "roles.yaml").write_text(yaml.safe_dump({
            "name": "roles",
            "table": "roles",
            "title": "Roles",
            "probe": {"column": "name"},
            "rows": ROLES,
        }))
        (tmp_path / "lookups.yml").write_text(yaml.safe_dump({"seeds": [
            {"name": "statuses", "table": "statuses", "rows": [{"code": "open"}]},
            {"name": "colors", "table": "colors", "dependencies": ["statuses"]},
        ]}))
        (tmp_path / "users.py").write_text(textwrap.dedent("""
            from schema_admin.seeds import rows_seed

            seed = rows_seed("users", "users", [{"email": "a@example.com"}], probe_column="email",
                             dependencies=["roles"])
        """))

        definitions = load_seed_definitions(tmp_path)

        assert sorted(definitions) == ["colors", "roles", "statuses", "users"]
        assert definitions["roles"].probe_values == ["super_admin", "admin", "viewer"]
        assert definitions["roles"].title == "Roles"
        assert definitions["colors"].dependencies == ["statuses"]
        assert definitions["users"].dependencies == ["roles"]

    def test_missing_name(self, tmp_path):
        """Test that a definition without a name is rejected."""
        (tmp_path / "bad.yaml").write_text(yaml.safe_dump({"table": "roles"}))
        with pytest.raises(InvalidPlan):
            load_seed_definitions(tmp_path)

    def test_duplicate_names(self, tmp_path):
        """Test that two definitions with the same name are rejected."""
        (tmp_path / "a.yaml").write_text(yaml.safe_dump({"name": "roles", "table": "roles"}))
        (tmp_path / "b.yaml").write_text(yaml.safe_dump({"name": "roles", "table": "roles_v2"}))
        with pytest.raises(InvalidPlan):
            load_seed_definitions(tmp_path)
