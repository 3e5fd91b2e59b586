"""Tests for the schema-admin CLI."""

import json
import textwrap
from pathlib import Path

import duckdb
import pytest
import yaml
from typer.testing import CliRunner

from schema_admin import __version__
from schema_admin.cli.config import CLIConfig
from schema_admin.cli.main import app

runner = CliRunner()

MIGRATION = textwrap.dedent("""
    from schema_admin.migrations import SqlMigration

    migration = SqlMigration(
        "CREATE TABLE {roles} (id INTEGER, name VARCHAR)",
        "DROP TABLE {roles}",
    )
""")


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the CLI at a temporary data directory and working directory."""
    data = tmp_path / "data"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SCHEMA_ADMIN_DATA_DIR", str(data))
    return data


@pytest.fixture
def with_migration(data_dir):
    (data_dir / "migrations").mkdir(parents=True)
    (data_dir / "migrations" / "001_create_roles.py").write_text(MIGRATION)
    return data_dir


@pytest.fixture
def with_seed(with_migration):
    (with_migration / "seeds").mkdir()
    (with_migration / "seeds" / "roles.yaml").write_text(yaml.safe_dump({
        "name": "roles",
        "table": "roles",
        "probe": {"column": "name"},
        "rows": [{"id": 1, "name": "admin"}, {"id": 2, "name": "viewer"}],
    }))
    return with_migration


def create_tables(data_dir: Path, *names: str) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    conn = duckdb.connect(str(data_dir / "schema_admin.duckdb"))
    try:
        for name in names:
            conn.execute(f'CREATE TABLE "{name}" (id INTEGER)')
    finally:
        conn.close()


def invoke_json(*args):
    result = runner.invoke(app, ["--json", *args])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestGlobalOptions:
    """Tests for top-level options."""

    def test_version(self):
        """Test that --version prints the version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_health(self, data_dir):
        """Test the health command."""
        report = invoke_json("health")
        assert report["status"] == "healthy"
        assert report["role"] == "super_admin"

    def test_health_table_output(self, data_dir):
        """Test that the default output is a table."""
        result = runner.invoke(app, ["health"])
        assert result.exit_code == 0
        assert "healthy" in result.stdout


class TestMigrateCommands:
    """Tests for 'migrate' commands."""

    def test_run_twice(self, with_migration):
        """Test that a second run applies nothing."""
        first = invoke_json("migrate", "run")
        assert first["applied"] == ["001_create_roles"]
        assert first["batch"] == 1

        second = invoke_json("migrate", "run")
        assert second["applied"] == []

    def test_status_and_rollback(self, with_migration):
        """Test status before and after a rollback."""
        invoke_json("migrate", "run")

        result = runner.invoke(app, ["migrate", "status"])
        assert result.exit_code == 0
        assert "001_create_roles" in result.stdout

        rolled_back = invoke_json("migrate", "rollback")
        assert rolled_back["rolled_back"] == ["001_create_roles"]
        assert invoke_json("migrate", "status")["pending"] == ["001_create_roles"]

    def test_rollback_unknown_name(self, with_migration):
        """Test that an unknown migration name exits with an error."""
        result = runner.invoke(app, ["migrate", "rollback", "--name", "nope"])
        assert result.exit_code == 1
        assert "Migration not found" in result.output

    def test_validate_invalid(self, data_dir):
        """Test that validate exits non-zero for a broken migration."""
        (data_dir / "migrations").mkdir(parents=True)
        (data_dir / "migrations" / "001_broken.py").write_text("VALUE = 1\n")

        result = runner.invoke(app, ["--json", "migrate", "validate"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["valid"] is False

    def test_history(self, with_migration):
        """Test the paginated ledger."""
        invoke_json("migrate", "run")
        history = invoke_json("migrate", "history")
        assert history["total"] == 1
        assert history["items"][0]["name"] == "001_create_roles"

    def test_viewer_cannot_migrate(self, with_migration):
        """Test that permission errors exit with code 1."""
        result = runner.invoke(app, ["--role", "viewer", "migrate", "run"])
        assert result.exit_code == 1
        assert "viewer" in result.output


class TestSeedCommands:
    """Tests for 'seed' commands."""

    def test_run_and_status(self, with_seed):
        """Test seeding and the resulting status."""
        invoke_json("migrate", "run")

        run = invoke_json("seed", "run", "roles")
        assert run["total_records"] == 2

        status = invoke_json("seed", "status")
        assert status["seeds"]["roles"]["status"] == "seeded"

    def test_dry_run(self, with_seed):
        """Test that a dry run lists operations."""
        invoke_json("migrate", "run")
        run = invoke_json("seed", "run", "roles", "--dry-run")
        assert run["dry_run"] is True
        assert run["operations"][0]["will_execute"] is True

    def test_unknown_seed(self, with_seed):
        """Test that an unknown seed exits with an error."""
        result = runner.invoke(app, ["seed", "run", "ghosts"])
        assert result.exit_code == 1
        assert "Unknown seed" in result.output

    def test_clear_requires_confirmation(self, with_seed):
        """Test that clear aborts when the prompt is declined."""
        invoke_json("migrate", "run")
        invoke_json("seed", "run", "roles")

        result = runner.invoke(app, ["seed", "clear", "roles"], input="n\n")
        assert result.exit_code == 1

        cleared = invoke_json("seed", "clear", "roles", "--yes")
        assert cleared["results"]["roles"]["records_deleted"] == 2


class TestPrefixCommands:
    """Tests for 'prefix' commands."""

    def test_analyze(self, data_dir):
        """Test the audit report."""
        create_tables(data_dir, "vend_products", "vend_orders", "vend_customers", "settings")

        report = invoke_json("prefix", "analyze")

        assert report["current_prefix"] == "vend_"
        assert report["confidence"] == pytest.approx(0.75)

    def test_preview_and_apply(self, data_dir):
        """Test previewing then applying a rename."""
        create_tables(data_dir, "old_widgets", "cis_orders")

        plan = invoke_json("prefix", "preview", "cis_", "old_widgets", "cis_orders")
        operations = {op["current_name"]: op for op in plan["preview"]}
        assert operations["old_widgets"]["new_name"] == "cis_widgets"
        assert operations["cis_orders"]["operation"] == "no_change"

        result = invoke_json("prefix", "apply", "cis_", "old_widgets", "cis_orders", "--no-backup")
        assert result["success"] is True
        assert result["processed_count"] == 1

        history = invoke_json("prefix", "history")
        assert history["operations"][0]["target_table"] == "cis_widgets"

    def test_apply_collision(self, data_dir):
        """Test that an invalid plan exits with an error."""
        create_tables(data_dir, "old_widgets", "cis_widgets")
        result = runner.invoke(app, ["prefix", "apply", "cis_", "old_widgets"])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_drop_dry_run(self, data_dir):
        """Test that drop previews without --execute."""
        create_tables(data_dir, "laravel_jobs")

        result = invoke_json("prefix", "drop", "laravel_jobs")

        assert result["dry_run"] is True
        assert invoke_json("prefix", "info", "laravel_jobs")["table_name"] == "laravel_jobs"

    def test_info_unknown_table(self, data_dir):
        """Test that info on a missing table exits with an error."""
        result = runner.invoke(app, ["prefix", "info", "ghost"])
        assert result.exit_code == 1
        assert "Table not found" in result.output


class TestCLIConfig:
    """Tests for CLIConfig."""

    def test_defaults(self, tmp_path):
        """Test defaults when no file exists."""
        config = CLIConfig.load(tmp_path / "missing.yaml")
        assert config.role == "super_admin"
        assert config.grants is None
        assert config.settings == {}

    def test_load_from_file(self, tmp_path):
        """Test that actor keys and settings are split."""
        path = tmp_path / "schema-admin.yaml"
        path.write_text(yaml.safe_dump({
            "role": "manager",
            "actor": "ops@example.com",
            "grants": ["*.select"],
            "table_prefix": "app_",
            "data_dir": str(tmp_path / "data"),
        }))

        config = CLIConfig.load(path)

        assert config.role == "manager"
        assert config.actor == "ops@example.com"
        assert config.grants == ["*.select"]
        assert config.build_settings().table_prefix == "app_"

    def test_environment_beats_file(self, tmp_path, monkeypatch):
        """Test that SCHEMA_ADMIN_* variables override file values."""
        path = tmp_path / "schema-admin.yaml"
        path.write_text(yaml.safe_dump({"role": "manager", "table_prefix": "app_"}))
        monkeypatch.setenv("SCHEMA_ADMIN_ROLE", "viewer")
        monkeypatch.setenv("SCHEMA_ADMIN_TABLE_PREFIX", "shop_")

        config = CLIConfig.load(path)

        assert config.role == "viewer"
        assert config.build_settings().table_prefix == "shop_"

    def test_config_option(self, data_dir, tmp_path):
        """Test that --config is honoured by commands."""
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"role": "viewer", "table_prefix": "app_"}))

        report = invoke_json("--config", str(path), "health")

        assert report["role"] == "viewer"
        assert report["table_prefix"] == "app_"

    def test_invalid_setting(self, data_dir, tmp_path):
        """Test that an invalid config value exits with an error."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"charset": "latin1"}))

        result = runner.invoke(app, ["--config", str(path), "health"])

        assert result.exit_code == 1
        assert "latin1" in result.output
