"""DuckDB connection handle.

One Connection owns one live DuckDB handle. The composition root
(schema_admin.engine) creates it and hands it to every other component;
nothing in the engine reaches for a process-global accessor.
"""

import threading
from dataclasses import dataclass
from pathlib import Path

import duckdb
import structlog

from schema_admin.config import Settings
from schema_admin.errors import ConnectionError, ConnectionNotInitialized

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConnectionConfig:
    """Parameters needed to open a DuckDB handle."""

    database: str = ":memory:"
    table_prefix: str = ""
    charset: str = "utf8mb4"
    read_only: bool = False
    threads: int = 4
    memory_limit: str = "4GB"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionConfig":
        return cls(
            database=str(settings.database),
            table_prefix=settings.table_prefix,
            charset=settings.charset,
            read_only=settings.read_only,
            threads=settings.duckdb_threads,
            memory_limit=settings.duckdb_memory_limit,
        )

    @property
    def database_name(self) -> str:
        """Catalog name DuckDB assigns to the attached file."""
        if self.database == ":memory:":
            return "memory"
        return Path(self.database).stem


class Connection:
    """
    Owner of a single live DuckDB connection.

    initialize() opens the handle; calling it again swaps in a new handle
    atomically and closes the previous one. Any use before initialize()
    raises ConnectionNotInitialized.
    """

    def __init__(self, config: ConnectionConfig) -> None:
        self._config = config
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    def initialize(self, config: ConnectionConfig | None = None) -> "Connection":
        """Open (or re-open) the database handle."""
        new_config = config or self._config
        handle = self._open(new_config)

        with self._lock:
            previous = self._conn
            self._conn = handle
            self._config = new_config

        if previous is not None:
            previous.close()
            logger.info("connection_replaced", database=new_config.database)
        else:
            logger.info("connection_initialized", database=new_config.database)
        return self

    def _open(self, config: ConnectionConfig) -> duckdb.DuckDBPyConnection:
        if config.database != ":memory:":
            Path(config.database).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = duckdb.connect(config.database, read_only=config.read_only)
            conn.execute(f"SET threads = {int(config.threads)}")
            conn.execute(f"SET memory_limit = '{config.memory_limit}'")
        except duckdb.Error as e:
            logger.error("connection_failed", database=config.database, error=str(e))
            raise ConnectionError(f"Database connection failed: {e}") from e
        return conn

    @property
    def handle(self) -> duckdb.DuckDBPyConnection:
        """The live handle. Fails fast before initialize()."""
        conn = self._conn
        if conn is None:
            raise ConnectionNotInitialized()
        return conn

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    def is_connected(self) -> bool:
        """Check that the handle answers a trivial query."""
        if self._conn is None:
            return False
        try:
            self._conn.execute("SELECT 1").fetchone()
            return True
        except duckdb.Error:
            return False

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            logger.info("connection_closed", database=self._config.database)
