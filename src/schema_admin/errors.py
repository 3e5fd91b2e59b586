"""Exception taxonomy for the schema administration engine."""

from typing import Any


class SchemaAdminError(Exception):
    """Base class for every error raised by the engine."""


class ConnectionError(SchemaAdminError):  # noqa: A001
    """Raised when the database handle cannot be opened."""


class ConnectionNotInitialized(ConnectionError):
    """Raised when a Connection is used before initialize()."""

    def __init__(self, message: str = "Database connection not initialized"):
        super().__init__(message)


class QueryError(SchemaAdminError):
    """A single statement failed. Carries the statement and its parameters."""

    def __init__(self, sql: str, params: Any, message: str):
        self.sql = sql
        self.params = params
        self.message = message
        super().__init__(f"{message} [sql={sql}]")


class TransactionStateError(SchemaAdminError):
    """Raised on commit/rollback without a transaction."""


class AlreadyInTransaction(TransactionStateError):
    """Raised when begin_transaction() is called inside a transaction."""

    def __init__(self, message: str = "A transaction is already active; nesting is not supported"):
        super().__init__(message)


class PermissionDenied(SchemaAdminError):
    """The current actor may not run this verb against this table."""

    def __init__(self, role: str, verb: str, table: str | None, reason: str = "not granted"):
        self.role = role
        self.verb = verb
        self.table = table
        self.reason = reason
        super().__init__(f"Role '{role}' may not {verb} {table or '<unknown>'}: {reason}")


class InvalidPlan(SchemaAdminError):
    """Query builder misuse, e.g. INSERT with no values."""


class InvalidIdentifier(SchemaAdminError):
    """A table or column name is not a safe SQL identifier."""


class CircularDependency(SchemaAdminError):
    """The seed dependency graph contains a cycle through this seed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circular dependency detected for seed: {name}")


class UnknownSeed(SchemaAdminError):
    """A seed name (or one of its dependencies) has no definition."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown seed: {name}")


class SeedFailed(SchemaAdminError):
    """A seed failed; the whole batch was rolled back."""

    def __init__(self, name: str, cause: BaseException, results: dict | None = None):
        self.name = name
        self.cause = cause
        self.results = results or {}
        super().__init__(f"Seed '{name}' failed: {cause}")


class MigrationNotFound(SchemaAdminError):
    """The migration file or ledger entry does not exist."""

    def __init__(self, name: str, path: str | None = None):
        self.name = name
        self.path = path
        detail = f" ({path})" if path else ""
        super().__init__(f"Migration not found: {name}{detail}")


class InvalidMigration(SchemaAdminError):
    """The loaded object does not honour the up()/down() contract."""

    def __init__(self, name: str, reason: str = "invalid migration format"):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid migration '{name}': {reason}")


class MigrationFailed(SchemaAdminError):
    """A migration failed; earlier migrations of the run are listed in applied."""

    def __init__(self, name: str, cause: BaseException, applied: list[str] | None = None):
        self.name = name
        self.cause = cause
        self.applied = applied or []
        super().__init__(f"Migration '{name}' failed: {cause}")


class TableNotFound(SchemaAdminError):
    """A selected table does not exist in the live schema."""

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table not found: {table}")


class BackupFailed(SchemaAdminError):
    """The pre-operation backup could not be created."""


class RenameFailed(SchemaAdminError):
    """A bulk rename/drop failed and was rolled back."""

    def __init__(self, operation: dict, cause: BaseException, execution_log: list[dict]):
        self.operation = operation
        self.cause = cause
        self.execution_log = execution_log
        super().__init__(f"Operation failed: {operation.get('sql')}: {cause}")


class Busy(SchemaAdminError):
    """An advisory lock could not be acquired within the timeout."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Resource busy: {key} (waited {timeout:.1f}s)")


class ConfirmationRequired(SchemaAdminError):
    """A destructive operation was called without confirm=True."""
