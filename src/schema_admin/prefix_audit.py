"""Table naming audit: classification, prefix inference and recommendations.

Snapshots are read fresh from duckdb_tables() on every call and are never
persisted; they only feed reports and rename plans.
"""

import math
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

import structlog

from schema_admin.errors import TableNotFound
from schema_admin.executor import StatementExecutor
from schema_admin.resolver import quote_identifier

logger = structlog.get_logger()

SYSTEM_TABLE_PATTERNS = ("information_schema", "mysql", "performance_schema", "sys", "duckdb_", "pg_")

# Tables left behind by web frameworks; names ending in "_" match as prefixes
FRAMEWORK_PATTERNS = ("laravel_", "telescope_", "sessions", "password_resets", "personal_access_tokens")

KEEP_PREFIXES = ("cis", "cam")

CORE_TABLES = ("users", "roles", "permissions", "configuration", "audit_log")

PREFIX_RE = re.compile(r"^([a-z]+_)")
GROUP_PREFIX_RE = re.compile(r"^([a-zA-Z]+)_")


@dataclass
class TableSnapshot:
    name: str
    row_count: int
    size_mb: float
    engine: str
    classification: str
    inferred_prefix: str | None
    has_prefix: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PrefixInference:
    """Result of the prefix histogram over user tables."""

    current_prefix: str
    most_common: str | None
    confidence: float
    histogram: dict[str, int] = field(default_factory=dict)


def own_prefix(name: str) -> str | None:
    """Leading lowercase `word_` token of a table name, if any."""
    match = PREFIX_RE.match(name)
    return match.group(1) if match else None


def estimate_seconds(size_mb: float, row_count: int, operations: int) -> int:
    """1s per MB + 1s per 100k rows + 2s per operation."""
    return int(math.ceil(size_mb) + math.ceil(row_count / 100000) + operations * 2)


class PrefixAuditor:
    """
    Introspects the live schema and reports on table naming.

    Tables named in `engine_tables` (ledger and audit tables) are classified
    as system so they never show up in rename recommendations.
    """

    def __init__(
        self,
        executor: StatementExecutor,
        standard_prefix: str = "cis_",
        fallback_prefix: str = "app_",
        confidence_threshold: float = 0.5,
        engine_tables: Iterable[str] = (),
        keep_prefixes: Iterable[str] = KEEP_PREFIXES,
        framework_patterns: Iterable[str] = FRAMEWORK_PATTERNS,
        core_tables: Iterable[str] = CORE_TABLES,
    ):
        self._executor = executor
        self.standard_prefix = standard_prefix
        self.fallback_prefix = fallback_prefix
        self.confidence_threshold = confidence_threshold
        self.engine_tables = frozenset(engine_tables)
        self.keep_prefixes = tuple(keep_prefixes)
        self.framework_patterns = tuple(framework_patterns)
        self.core_tables = tuple(core_tables)

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(self, name: str) -> str:
        lowered = name.lower()
        if lowered in self.engine_tables:
            return "system"
        if any(lowered.startswith(pattern) for pattern in SYSTEM_TABLE_PATTERNS):
            return "system"
        return "user"

    def is_framework_table(self, name: str) -> bool:
        for pattern in self.framework_patterns:
            if pattern.endswith("_"):
                if name.startswith(pattern):
                    return True
            elif name == pattern:
                return True
        return False

    # -------------------------------------------------------------------------
    # Live metadata
    # -------------------------------------------------------------------------

    def database_name(self) -> str:
        return self._executor.query("SELECT current_database() AS db_name").scalar() or "unknown"

    def list_tables(self) -> list[TableSnapshot]:
        """All base tables of the current database, sorted by name."""
        rows = self._executor.query(
            """
            SELECT table_name, estimated_size, column_count
            FROM duckdb_tables()
            WHERE database_name = current_database()
              AND schema_name = current_schema()
              AND NOT internal
              AND NOT temporary
            ORDER BY table_name
            """
        ).rows

        snapshots = [
            TableSnapshot(
                name=row["table_name"],
                row_count=int(row["estimated_size"] or 0),
                # No per-table byte size in DuckDB; assume 8 bytes per value
                size_mb=round((row["estimated_size"] or 0) * (row["column_count"] or 0) * 8 / 1024 / 1024, 2),
                engine="DuckDB",
                classification=self.classify(row["table_name"]),
                inferred_prefix=own_prefix(row["table_name"]),
            )
            for row in rows
        ]

        inference = self.infer_prefix(s.name for s in snapshots if s.classification == "user")
        for snapshot in snapshots:
            snapshot.has_prefix = bool(inference.current_prefix) and snapshot.name.startswith(
                inference.current_prefix
            )
        return snapshots

    def find(self, name: str, snapshots: list[TableSnapshot] | None = None) -> TableSnapshot:
        for snapshot in snapshots if snapshots is not None else self.list_tables():
            if snapshot.name == name:
                return snapshot
        raise TableNotFound(name)

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def infer_prefix(self, names: Iterable[str]) -> PrefixInference:
        """
        Dominant `^[a-z]+_` prefix over user table names.

        The most common prefix becomes current only when its share of all
        user tables exceeds the confidence threshold. Ties go to the
        alphabetically first prefix.
        """
        names = [n for n in names if self.classify(n) == "user"]
        if not names:
            return PrefixInference(current_prefix="", most_common=None, confidence=0.0)

        histogram = Counter(p for p in (own_prefix(n) for n in names) if p)
        if not histogram:
            return PrefixInference(current_prefix="", most_common=None, confidence=0.0)

        most_common, count = sorted(histogram.items(), key=lambda item: (-item[1], item[0]))[0]
        confidence = count / len(names)
        return PrefixInference(
            current_prefix=most_common if confidence > self.confidence_threshold else "",
            most_common=most_common,
            confidence=confidence,
            histogram=dict(sorted(histogram.items())),
        )

    def suggest_prefix(self, most_common: str | None) -> str:
        """Standard prefix, or the fallback when the standard one is already dominant."""
        return self.fallback_prefix if most_common == self.standard_prefix else self.standard_prefix

    # -------------------------------------------------------------------------
    # Recommendations
    # -------------------------------------------------------------------------

    def recommend(self, names: Iterable[str], target_prefix: str | None = None) -> dict[str, list]:
        """
        Sort user tables into keep / rename_to_target / drop_framework / needs_review.

        Every table lands in exactly one bucket; output order follows the
        sorted table names.
        """
        target = target_prefix if target_prefix is not None else self.standard_prefix
        keep = set(self.keep_prefixes)
        if target:
            keep.add(target.rstrip("_"))

        buckets: dict[str, list] = {
            "keep": [],
            "rename_to_target": [],
            "drop_framework": [],
            "needs_review": [],
        }
        for name in sorted(set(names)):
            if self.classify(name) == "system":
                continue
            match = GROUP_PREFIX_RE.match(name)
            if match and match.group(1) in keep:
                buckets["keep"].append(name)
            elif self.is_framework_table(name):
                buckets["drop_framework"].append(name)
            elif match:
                base = name[len(match.group(0)):]
                buckets["rename_to_target"].append({"current": name, "target": target + base})
            elif name in self.core_tables:
                buckets["rename_to_target"].append({"current": name, "target": target + name})
            else:
                buckets["needs_review"].append(name)
        return buckets

    def _stats(self, snapshots: list[TableSnapshot], current_prefix: str) -> dict[str, int]:
        stats = {"prefixed_tables": 0, "unprefixed_tables": 0, "mixed_prefix": 0, "system_tables": 0}
        for snapshot in snapshots:
            if snapshot.classification == "system":
                stats["system_tables"] += 1
            elif not current_prefix:
                stats["unprefixed_tables"] += 1
            elif snapshot.name.startswith(current_prefix):
                stats["prefixed_tables"] += 1
            else:
                stats["mixed_prefix"] += 1
        return stats

    @staticmethod
    def _messages(stats: dict[str, int], confidence: float) -> list[dict[str, str]]:
        messages = []
        if stats["mixed_prefix"] > 0:
            messages.append({
                "type": "warning",
                "message": "Mixed prefix patterns detected. Consider standardizing.",
            })
        if stats["unprefixed_tables"] > stats["prefixed_tables"]:
            messages.append({
                "type": "info",
                "message": "Most tables are unprefixed. Consider adding a consistent prefix.",
            })
        if confidence < 0.7 and stats["prefixed_tables"] > 0:
            messages.append({
                "type": "warning",
                "message": "Inconsistent prefix pattern. Review table naming convention.",
            })
        return messages

    def analyze(self) -> dict[str, Any]:
        """Full audit report for the current database."""
        snapshots = self.list_tables()
        user_names = [s.name for s in snapshots if s.classification == "user"]
        inference = self.infer_prefix(user_names)
        suggested = self.suggest_prefix(inference.most_common)
        stats = self._stats(snapshots, inference.current_prefix)

        logger.info(
            "prefix_audit_completed",
            table_count=len(snapshots),
            current_prefix=inference.current_prefix,
            confidence=round(inference.confidence, 3),
        )
        return {
            "database_name": self.database_name(),
            "current_prefix": inference.current_prefix,
            "suggested_prefix": suggested,
            "confidence": inference.confidence,
            "prefix_histogram": inference.histogram,
            "connection_status": "active",
            "table_count": len(snapshots),
            "tables": [s.to_dict() for s in snapshots],
            "stats": stats,
            "messages": self._messages(stats, inference.confidence),
            "recommendations": self.recommend(user_names, suggested),
        }

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def table_info(self, name: str) -> dict[str, Any]:
        """Columns, indexes and status of one table."""
        snapshot = self.find(name)
        columns = self._executor.query(f"DESCRIBE {quote_identifier(name)}").rows
        indexes = self._executor.execute(
            """
            SELECT index_name, is_unique, is_primary, sql
            FROM duckdb_indexes()
            WHERE table_name = $table
            ORDER BY index_name
            """,
            {"table": name},
        ).rows
        constraints = self._executor.execute(
            """
            SELECT constraint_type, constraint_column_names
            FROM duckdb_constraints()
            WHERE table_name = $table
            """,
            {"table": name},
        ).rows
        return {
            "table_name": name,
            "status": snapshot.to_dict(),
            "columns": columns,
            "indexes": indexes,
            "constraints": constraints,
        }
