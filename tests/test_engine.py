"""Tests for Settings and the Engine composition root."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from schema_admin.access import RoleBasedGate, SuperAdminGate
from schema_admin.config import Settings
from schema_admin.engine import Engine
from schema_admin.errors import PermissionDenied
from schema_admin.migrations import InMemoryMigrationSource, SqlMigration
from schema_admin.seeds import rows_seed


class TestSettings:
    """Tests for Settings."""

    def test_default_paths_follow_data_dir(self, tmp_path):
        """Test that paths are derived from data_dir when not set."""
        settings = Settings(data_dir=tmp_path)

        assert settings.database == str(tmp_path / "schema_admin.duckdb")
        assert settings.migrations_dir == tmp_path / "migrations"
        assert settings.seeds_dir == tmp_path / "seeds"
        assert settings.lock_dir == tmp_path / "locks"

    def test_explicit_paths_kept(self, tmp_path):
        """Test that explicit paths are not overwritten."""
        settings = Settings(data_dir=tmp_path, database=":memory:", migrations_dir=tmp_path / "m")
        assert settings.database == ":memory:"
        assert settings.migrations_dir == tmp_path / "m"

    def test_environment(self, tmp_path, monkeypatch):
        """Test that SCHEMA_ADMIN_* variables are read."""
        monkeypatch.setenv("SCHEMA_ADMIN_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SCHEMA_ADMIN_TABLE_PREFIX", "app_")
        monkeypatch.setenv("SCHEMA_ADMIN_PROTECTED_TABLES", '["users"]')

        settings = Settings()

        assert settings.data_dir == tmp_path
        assert settings.table_prefix == "app_"
        assert settings.protected_tables == ["users"]

    @pytest.mark.parametrize("charset", ["utf8", "UTF-8", "utf8mb4"])
    def test_utf8_accepted(self, charset):
        """Test that UTF-8 spellings are accepted."""
        assert Settings(charset=charset).charset == charset

    def test_other_charset_rejected(self):
        """Test that non UTF-8 character sets are rejected."""
        with pytest.raises(ValidationError):
            Settings(charset="latin1")


class TestEngine:
    """Tests for Engine.from_settings()."""

    def test_components_share_connection(self, engine):
        """Test that every component works on the same executor."""
        assert engine.executor.connection is engine.connection
        assert engine.resolver.prefix == "cis_"
        assert isinstance(engine.gate, SuperAdminGate)
        assert engine.migrations.table == "migrations"

    def test_health(self, engine, settings):
        """Test the health report."""
        report = engine.health()

        assert report["status"] == "healthy"
        assert report["connected"] is True
        assert report["role"] == "super_admin"
        assert report["table_prefix"] == "cis_"
        assert report["storage"]["data_dir"]["path"] == str(settings.data_dir)

    def test_close(self, settings):
        """Test that closing the engine closes the connection."""
        with Engine.from_settings(settings, seed_definitions={}) as engine:
            assert engine.connection.is_connected()
        assert engine.health()["status"] == "unhealthy"

    def test_end_to_end(self, settings):
        """Test migrate, seed and audit through one engine."""
        source = InMemoryMigrationSource({
            "001_roles": SqlMigration("CREATE TABLE {roles} (id INTEGER, name VARCHAR)", "DROP TABLE {roles}"),
        })
        seeds = [rows_seed("roles", "roles", [{"id": 1, "name": "admin"}], probe_column="name")]

        with Engine.from_settings(settings, migration_source=source, seed_definitions=seeds) as engine:
            engine.migrations.migrate()
            engine.seeds.execute_seed(["roles"])

            assert engine.executor.select("roles").count() == 1
            report = engine.auditor.analyze()
            assert report["current_prefix"] == "cis_"
            assert engine.auditor.classify("migrations") == "system"

    def test_directory_sources_by_default(self, settings):
        """Test that migrations and seeds are discovered under data_dir."""
        settings.migrations_dir.mkdir(parents=True)
        (settings.migrations_dir / "001_notes.py").write_text(
            "from schema_admin.migrations import SqlMigration\n"
            "migration = SqlMigration('CREATE TABLE {notes} (id INTEGER)', 'DROP TABLE {notes}')\n"
        )
        Path(settings.seeds_dir).mkdir(parents=True)
        (settings.seeds_dir / "notes.yaml").write_text("name: notes\ntable: notes\nrows:\n  - id: 1\n")

        with Engine.from_settings(settings) as engine:
            assert engine.migrations.pending() == ["001_notes"]
            assert list(engine.seeds.definitions) == ["notes"]

    def test_role_based_engine(self, settings):
        """Test that a viewer engine cannot create the ledger."""
        with Engine.from_settings(settings, role="viewer", seed_definitions={}) as engine:
            assert isinstance(engine.gate, RoleBasedGate)
            assert engine.audit.actor == "viewer"
            with pytest.raises(PermissionDenied):
                engine.migrations.migrate()
