"""Main CLI entry point for schema-admin."""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from schema_admin import __version__
from schema_admin.logging_config import setup_logging

# Create main app
app = typer.Typer(
    name="schema-admin",
    help="Schema-aware migrations, seeds and table prefix administration",
    no_args_is_help=True,
)


# Global state
class GlobalState:
    json_output: bool = False
    verbose: bool = False
    config_path: Path | None = None
    role: str | None = None


state = GlobalState()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"schema-admin version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    json_output: bool = typer.Option(
        False, "--json", "-j",
        help="Output as JSON instead of tables"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug information"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        help="Config file (default: ./schema-admin.yaml)"
    ),
    role: Optional[str] = typer.Option(
        None, "--role", "-r",
        help="Act as this role instead of the configured one"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """schema-admin - administer a prefixed DuckDB schema."""
    state.json_output = json_output
    state.verbose = verbose
    state.config_path = config
    state.role = role

    # Log lines go to stderr so --json output stays parseable
    setup_logging(
        debug=verbose,
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        cache=False,
    )


# Import and register command groups
from .commands import health, migrate, prefix, seed  # noqa: E402

app.add_typer(migrate.app, name="migrate")
app.add_typer(seed.app, name="seed")
app.add_typer(prefix.app, name="prefix")
app.command("health")(health.health)


if __name__ == "__main__":
    app()
