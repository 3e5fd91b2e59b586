"""Health command."""

import typer

from ..config import open_engine
from ..main import state
from ..output import print_dict, print_json


def health() -> None:
    """Check the database connection and storage paths."""
    with open_engine(state.config_path, state.role) as engine:
        report = engine.health()

        if state.json_output:
            print_json(report)
        else:
            storage = report.pop("storage")
            print_dict(report, title="Health")
            print_dict(
                {name: f"{p['path']} ({'ok' if p['exists'] else 'missing'})" for name, p in storage.items()},
                title="Storage",
            )

        if report["status"] != "healthy":
            raise typer.Exit(1)
