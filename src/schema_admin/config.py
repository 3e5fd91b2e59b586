"""Engine configuration using pydantic-settings."""

from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., SCHEMA_ADMIN_TABLE_PREFIX=cis_)
    2. .env file in the project root
    3. Keyword overrides (the CLI passes values read from its YAML file)

    Storage paths are derived from DATA_DIR by default but can be overridden.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEMA_ADMIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    debug: bool = True  # Default to True for development

    # Storage paths - all derived from data_dir by default
    data_dir: Path = Path("./data")

    # These can be overridden, but default to subdirs of data_dir
    database: str | None = None  # DuckDB file path or ":memory:"
    migrations_dir: Path | None = None
    seeds_dir: Path | None = None
    lock_dir: Path | None = None

    read_only: bool = False
    charset: str = "utf8mb4"

    # DuckDB settings
    duckdb_threads: int = 4
    duckdb_memory_limit: str = "4GB"

    # Prefixing
    table_prefix: str = "cis_"
    standard_prefix: str = "cis_"
    fallback_prefix: str = "app_"
    prefix_confidence_threshold: float = 0.5

    # Profiling
    profiler_enabled: bool = False
    slow_query_threshold_ms: float = 500.0

    # Advisory locks
    lock_timeout_seconds: float = 30.0

    # Ledger / audit tables (physical names, never prefixed)
    migrations_table: str = "migrations"
    audit_table: str = "audit_log"
    prefix_operations_table: str = "prefix_operations"

    # Authorization
    protected_tables: list[str] = [
        "users",
        "user_sessions",
        "roles",
        "permissions",
        "role_permissions",
        "api_keys",
        "integration_secrets",
    ]

    @field_validator("charset")
    @classmethod
    def require_utf8(cls, value: str) -> str:
        """DuckDB stores text as UTF-8 only."""
        if value.lower().replace("-", "") not in ("utf8", "utf8mb4"):
            raise ValueError(f"Unsupported character set: {value}")
        return value

    @model_validator(mode="after")
    def set_default_paths(self) -> "Settings":
        """Set default paths based on data_dir if not explicitly provided."""
        if self.database is None:
            self.database = str(self.data_dir / "schema_admin.duckdb")
        if self.migrations_dir is None:
            self.migrations_dir = self.data_dir / "migrations"
        if self.seeds_dir is None:
            self.seeds_dir = self.data_dir / "seeds"
        if self.lock_dir is None:
            self.lock_dir = self.data_dir / "locks"
        return self

    @property
    def storage_paths(self) -> dict[str, Path]:
        """Return all storage paths for health check validation."""
        return {
            "data_dir": self.data_dir,
            "migrations_dir": self.migrations_dir,
            "seeds_dir": self.seeds_dir,
            "lock_dir": self.lock_dir,
        }
