"""Logical to physical table-name resolution."""

import re

from schema_admin.errors import InvalidIdentifier

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TOKEN_RE = re.compile(r"\{([a-z_][a-z0-9_]*)\}")


def validate_identifier(name: str) -> str:
    """Return name unchanged if it is a plain SQL identifier."""
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise InvalidIdentifier(f"Invalid identifier: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """Double-quote an identifier for DuckDB."""
    return '"' + validate_identifier(name) + '"'


class TableResolver:
    """
    Maps logical table names to physical ones by prepending a prefix.

    Resolution is pure: a resolver never changes its prefix. Callers that
    need a different prefix get a new resolver from with_prefix(), so plans
    already built against the old one keep their physical names.
    """

    def __init__(self, prefix: str = "") -> None:
        if prefix and not IDENTIFIER_RE.match(prefix):
            raise InvalidIdentifier(f"Invalid table prefix: {prefix!r}")
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def table(self, logical: str) -> str:
        """Physical name for a logical table."""
        return self._prefix + validate_identifier(logical)

    def strip(self, physical: str) -> str:
        """Logical name for a physical table (unchanged if unprefixed)."""
        if self._prefix and physical.startswith(self._prefix):
            return physical[len(self._prefix):]
        return physical

    def rewrite(self, sql: str) -> str:
        """Replace every {logical} token in sql with its physical name."""
        return TOKEN_RE.sub(lambda m: self.table(m.group(1)), sql)

    def with_prefix(self, prefix: str) -> "TableResolver":
        return TableResolver(prefix)

    def __repr__(self) -> str:
        return f"TableResolver(prefix={self._prefix!r})"
