"""Prometheus metrics definitions for the schema administration engine.

This module defines all Prometheus metrics used for observability:
- Statement metrics (count, duration, slow queries)
- Transaction metrics
- Advisory lock metrics (acquisitions, wait time, timeouts)
- Migration, seed and prefix operation metrics
- Authorization denials
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Statement Metrics
# =============================================================================

QUERIES_TOTAL = Counter(
    "schema_admin_queries_total",
    "Total number of executed statements",
    ["verb", "status"]
)

QUERY_DURATION = Histogram(
    "schema_admin_query_duration_seconds",
    "Statement duration in seconds",
    ["verb"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

SLOW_QUERIES_TOTAL = Counter(
    "schema_admin_slow_queries_total",
    "Statements slower than the configured threshold",
    ["verb"]
)

# =============================================================================
# Transaction Metrics
# =============================================================================

TRANSACTIONS_TOTAL = Counter(
    "schema_admin_transactions_total",
    "Finished transactions by outcome",
    ["outcome"]  # commit, rollback
)

TRANSACTIONS_ACTIVE = Gauge(
    "schema_admin_transactions_active",
    "Number of currently open transactions"
)

# =============================================================================
# Advisory Lock Metrics
# =============================================================================

LOCK_ACQUISITIONS = Counter(
    "schema_admin_lock_acquisitions_total",
    "Total number of advisory lock acquisitions",
    ["operation"]
)

LOCK_WAIT_TIME = Histogram(
    "schema_admin_lock_wait_seconds",
    "Time spent waiting for advisory locks",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

LOCK_TIMEOUTS = Counter(
    "schema_admin_lock_timeouts_total",
    "Advisory lock acquisitions that timed out",
    ["operation"]
)

LOCKS_ACTIVE = Gauge(
    "schema_admin_locks_active",
    "Number of currently held advisory locks"
)

# =============================================================================
# Batch Operation Metrics
# =============================================================================

MIGRATIONS_TOTAL = Counter(
    "schema_admin_migrations_total",
    "Migrations applied or rolled back",
    ["direction", "status"]  # up/down, success/failed
)

SEEDS_TOTAL = Counter(
    "schema_admin_seeds_total",
    "Seeds processed",
    ["status"]  # seeded, skipped, failed
)

PREFIX_OPERATIONS_TOTAL = Counter(
    "schema_admin_prefix_operations_total",
    "Rename/drop operations executed by the prefix engine",
    ["operation", "status"]
)

BACKUPS_TOTAL = Counter(
    "schema_admin_backups_total",
    "Pre-operation backups",
    ["status"]
)

# =============================================================================
# Authorization Metrics
# =============================================================================

ACCESS_DENIED_TOTAL = Counter(
    "schema_admin_access_denied_total",
    "Statements rejected by the access gate",
    ["role", "verb"]
)
