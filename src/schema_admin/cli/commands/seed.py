"""Seed commands."""

from typing import List

import typer

from schema_admin.errors import SeedFailed

from ..config import open_engine
from ..main import state
from ..output import print_error, print_info, print_json, print_success, print_table, print_warning

app = typer.Typer(
    name="seed",
    help="Inspect and run reference data seeds",
    no_args_is_help=True,
)


@app.command("status")
def status() -> None:
    """Show every seed with its probe status."""
    with open_engine(state.config_path, state.role) as engine:
        info = engine.seeds.status()

        if state.json_output:
            print_json(info)
            return

        rows = [
            {
                "Seed": name,
                "Table": seed["table"],
                "Depends on": ", ".join(seed["dependencies"]),
                "Status": seed["status"],
                "Records": f"{seed['record_count']}/{seed.get('expected_count', 0)}",
            }
            for name, seed in info["seeds"].items()
        ]
        summary = info["summary"]
        print_table(
            rows,
            columns=["Seed", "Table", "Depends on", "Status", "Records"],
            title=f"Seeds ({summary['seeded']}/{summary['total']} seeded)",
        )


@app.command("run")
def run(
    names: List[str] = typer.Argument(..., help="Seeds to run; dependencies are added"),
    force: bool = typer.Option(False, "--force", "-f", help="Re-apply seeds that are already present"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run without writing"),
) -> None:
    """Run seeds in dependency order inside one transaction."""
    with open_engine(state.config_path, state.role) as engine:
        try:
            result = engine.seeds.execute_seed(names, force=force, dry_run=dry_run)
        except SeedFailed as e:
            if state.json_output:
                print_json({"success": False, "failed": e.name, "error": str(e.cause)})
            else:
                print_error(str(e))
                print_warning("All seeds of this run were rolled back")
            raise typer.Exit(1)

        if state.json_output:
            print_json({"success": True, **result.to_dict()})
            return

        print_info(f"Execution order: {' -> '.join(result.execution_order)}")
        if dry_run:
            print_table(
                result.operations,
                columns=["seed", "table", "current_status", "will_execute", "expected_records"],
                title="Dry run",
            )
            return

        for name, seed_result in result.results.items():
            if seed_result.skipped:
                print_info(f"Skipped: {name} (already seeded)")
            else:
                print_success(f"Seeded: {name} ({seed_result.records_inserted} records)")


@app.command("clear")
def clear(
    names: List[str] = typer.Argument(..., help="Seeds whose rows should be deleted"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm deletion"),
) -> None:
    """Delete the probe rows of the given seeds."""
    if not yes:
        yes = typer.confirm(f"Delete seeded rows of {', '.join(names)}?")
        if not yes:
            print("Aborted")
            raise typer.Exit(1)

    with open_engine(state.config_path, state.role) as engine:
        results = engine.seeds.clear_seed(names, confirm=yes)

        if state.json_output:
            print_json({"success": True, "results": results})
        else:
            for name, outcome in results.items():
                print_success(f"Cleared: {name} ({outcome['records_deleted']} records)")
