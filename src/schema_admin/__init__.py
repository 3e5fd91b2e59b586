"""Schema-aware persistence and administration engine on DuckDB."""

__version__ = "0.1.0"
