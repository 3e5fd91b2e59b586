"""Role-based authorization for every statement the engine executes.

Grants are strings of the form:

    users.select     exact verb on one resource
    users.*          every verb on one resource
    *.select         one verb on every resource
    *                every verb on every resource

Resolution order for a non-super role: exact match, resource wildcard,
verb wildcard, global wildcard, otherwise deny. Destructive verbs (DROP,
ALTER, TRUNCATE, DELETE) on a protected table are denied for every role
except super_admin, whatever the grants say.

SQL text holding several statements is split with DuckDB's parser and
every statement is checked; a harmless first statement authorizes nothing
that follows it.

Usage:
    gate = gate_for("admin", ["*"], protected_tables=["users"])
    gate.check("DROP", "users")          # raises PermissionDenied
    gate.check_statement("SELECT * FROM cis_orders")
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

import duckdb
import structlog

from schema_admin import metrics
from schema_admin.errors import PermissionDenied
from schema_admin.resolver import TableResolver

logger = structlog.get_logger(__name__)

SUPER_ADMIN_ROLE = "super_admin"


class Verb(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CREATE = "CREATE"
    DROP = "DROP"
    ALTER = "ALTER"
    TRUNCATE = "TRUNCATE"

    @property
    def grant_name(self) -> str:
        return self.value.lower()


DESTRUCTIVE_VERBS = frozenset({Verb.DROP, Verb.ALTER, Verb.TRUNCATE, Verb.DELETE})

# Default role map used when no grants are configured.
DEFAULT_ROLE_GRANTS: dict[str, list[str]] = {
    SUPER_ADMIN_ROLE: ["*"],
    "admin": ["*"],
    "manager": ["*.select", "*.insert", "*.update"],
    "staff": ["*.select", "*.insert"],
    "viewer": ["*.select"],
}

CATALOG_SCHEMAS = frozenset({"information_schema", "pg_catalog"})

_COMMENT_RE = re.compile(r"^\s*(--[^\n]*\n|/\*.*?\*/)", re.DOTALL)
_NAME = r"((?:[`\"]?[\w]+[`\"]?\.)?[`\"]?[\w]+[`\"]?)"
_PATTERNS: list[tuple[Verb, re.Pattern]] = [
    (Verb.SELECT, re.compile(r"^(?:SELECT|WITH)\b.*?\bFROM\s+" + _NAME, re.IGNORECASE | re.DOTALL)),
    (Verb.INSERT, re.compile(r"^INSERT\s+(?:OR\s+\w+\s+)?INTO\s+" + _NAME, re.IGNORECASE)),
    (Verb.UPDATE, re.compile(r"^UPDATE\s+" + _NAME, re.IGNORECASE)),
    (Verb.DELETE, re.compile(r"^DELETE\s+FROM\s+" + _NAME, re.IGNORECASE)),
    (Verb.CREATE, re.compile(
        r"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?(?:UNIQUE\s+)?INDEX\s+"
        r"(?:IF\s+NOT\s+EXISTS\s+)?[\w\"`]+\s+ON\s+" + _NAME,
        re.IGNORECASE,
    )),
    (Verb.CREATE, re.compile(
        r"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?(?:TABLE|VIEW|SEQUENCE)\s+"
        r"(?:IF\s+NOT\s+EXISTS\s+)?" + _NAME,
        re.IGNORECASE,
    )),
    (Verb.DROP, re.compile(r"^DROP\s+(?:TABLE|VIEW|SEQUENCE|INDEX)\s+(?:IF\s+EXISTS\s+)?" + _NAME, re.IGNORECASE)),
    (Verb.ALTER, re.compile(r"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?" + _NAME, re.IGNORECASE)),
    (Verb.ALTER, re.compile(r"^RENAME\s+TABLE\s+" + _NAME, re.IGNORECASE)),
    (Verb.TRUNCATE, re.compile(r"^TRUNCATE\s+(?:TABLE\s+)?" + _NAME, re.IGNORECASE)),
]


@dataclass(frozen=True)
class StatementTarget:
    """(verb, table) extracted from a statement."""

    verb: Verb | None
    table: str | None
    catalog: bool = False


def _strip_comments(sql: str) -> str:
    text = sql
    while True:
        match = _COMMENT_RE.match(text)
        if not match:
            return text.strip()
        text = text[match.end():]


def parse_statement(sql: str) -> StatementTarget:
    """Extract the verb and primary target table from SQL text."""
    text = _strip_comments(sql)
    for verb, pattern in _PATTERNS:
        match = pattern.match(text)
        if match:
            raw = match.group(1).replace('"', "").replace("`", "")
            schema, _, name = raw.rpartition(".")
            catalog = schema.lower() in CATALOG_SCHEMAS or name.lower().startswith("duckdb_")
            return StatementTarget(verb=verb, table=name, catalog=catalog)

    first_word = text.split(None, 1)[0].upper() if text else ""
    if first_word in ("SELECT", "WITH", "VALUES", "SHOW", "DESCRIBE", "EXPLAIN"):
        # Table-less read (SELECT 1, SHOW TABLES, ...)
        return StatementTarget(verb=Verb.SELECT, table=None, catalog=True)
    return StatementTarget(verb=None, table=None)


def split_statements(sql: str) -> list[str]:
    """
    Split SQL text into the statements DuckDB would run.

    Text the parser rejects is returned whole; it is checked as a single
    statement and fails in the engine if it gets that far.
    """
    try:
        statements = [statement.query for statement in duckdb.extract_statements(sql)]
    except duckdb.Error:
        return [sql]
    return statements or [sql]


class CapabilitySet:
    """Parsed grants: resource -> allowed verbs."""

    def __init__(self, grants: Iterable[str] = ()) -> None:
        self._grants: dict[str, set[str]] = {}
        for grant in grants:
            resource, _, verb = grant.strip().partition(".")
            if not resource:
                continue
            if resource == "*" and not verb:
                verb = "*"
            self._grants.setdefault(resource.lower(), set()).add((verb or "*").lower())

    @property
    def grants(self) -> list[str]:
        return sorted(
            "*" if resource == "*" and verb == "*" else f"{resource}.{verb}"
            for resource, verbs in self._grants.items()
            for verb in verbs
        )

    def match(self, verb: Verb, resource: str) -> str | None:
        """Return the rule that authorizes verb on resource, or None."""
        resource = resource.lower()
        name = verb.grant_name
        if name in self._grants.get(resource, ()):
            return f"{resource}.{name}"
        if "*" in self._grants.get(resource, ()):
            return f"{resource}.*"
        if name in self._grants.get("*", ()):
            return f"*.{name}"
        if "*" in self._grants.get("*", ()):
            return "*"
        return None


class AccessGate(ABC):
    """Authorizes (verb, table) pairs for one actor."""

    role: str

    @abstractmethod
    def check(self, verb: str | Verb, table: str | None) -> None:
        """Raise PermissionDenied unless the actor may run verb on table."""

    def allows(self, verb: str | Verb, table: str | None) -> bool:
        try:
            self.check(verb, table)
        except PermissionDenied:
            return False
        return True

    def check_statement(self, sql: str) -> StatementTarget:
        """
        Authorize raw SQL text, one statement at a time.

        Returns the target of the last statement, whose result the engine
        hands back.
        """
        target = None
        for statement in split_statements(sql):
            target = self._check_one(statement)
        return target

    def _check_one(self, sql: str) -> StatementTarget:
        target = parse_statement(sql)
        if target.verb is Verb.SELECT and target.catalog:
            return target
        if target.verb is None:
            self._deny("UNKNOWN", None, "unrecognised statement")
        self.check(target.verb, target.table)
        return target

    def _deny(self, verb: str, table: str | None, reason: str) -> None:
        metrics.ACCESS_DENIED_TOTAL.labels(role=self.role, verb=verb).inc()
        logger.warning("access_denied", role=self.role, verb=verb, table=table, reason=reason)
        raise PermissionDenied(self.role, verb, table, reason)


class SuperAdminGate(AccessGate):
    """Allows everything."""

    role = SUPER_ADMIN_ROLE

    def check(self, verb: str | Verb, table: str | None) -> None:
        return None

    def check_statement(self, sql: str) -> StatementTarget:
        return parse_statement(split_statements(sql)[-1])


class RoleBasedGate(AccessGate):
    """Checks a role's capability set, with a protected-table deny list."""

    def __init__(
        self,
        role: str,
        capabilities: CapabilitySet,
        protected_tables: Iterable[str] = (),
        resolver: TableResolver | None = None,
    ) -> None:
        self.role = role
        self.capabilities = capabilities
        self.protected_tables = frozenset(t.lower() for t in protected_tables)
        self._resolver = resolver or TableResolver("")

    def check(self, verb: str | Verb, table: str | None) -> None:
        try:
            verb = Verb(verb.upper()) if isinstance(verb, str) else verb
        except ValueError:
            self._deny(str(verb).upper(), table, "unknown verb")

        if table is None:
            self._deny(verb.value, None, "no target table")

        resource = self._resolver.strip(table).lower()

        if verb in DESTRUCTIVE_VERBS and (
            resource in self.protected_tables or table.lower() in self.protected_tables
        ):
            self._deny(verb.value, table, "protected table")

        rule = self.capabilities.match(verb, resource)
        if rule is None:
            self._deny(verb.value, table, "not granted")

        logger.debug("access_granted", role=self.role, verb=verb.value, table=table, rule=rule)


def gate_for(
    role: str,
    grants: Iterable[str] | None = None,
    protected_tables: Iterable[str] = (),
    resolver: TableResolver | None = None,
) -> AccessGate:
    """
    Build the gate for an actor.

    super_admin short-circuits to SuperAdminGate. Other roles use the grants
    passed in, or DEFAULT_ROLE_GRANTS for their role when none are given.
    """
    if role == SUPER_ADMIN_ROLE:
        return SuperAdminGate()
    if grants is None:
        grants = DEFAULT_ROLE_GRANTS.get(role, [])
    return RoleBasedGate(role, CapabilitySet(grants), protected_tables, resolver)
