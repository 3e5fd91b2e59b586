"""Migration commands."""

from typing import Optional

import typer

from schema_admin.errors import MigrationFailed

from ..config import open_engine
from ..main import state
from ..output import print_error, print_info, print_json, print_success, print_table

app = typer.Typer(
    name="migrate",
    help="Apply and roll back schema migrations",
    no_args_is_help=True,
)


@app.command("run")
def run(
    atomic: bool = typer.Option(
        False, "--atomic",
        help="Apply the whole batch in one transaction"
    ),
) -> None:
    """Apply all pending migrations as one batch."""
    with open_engine(state.config_path, state.role) as engine:
        try:
            result = engine.migrations.migrate(atomic=atomic)
        except MigrationFailed as e:
            if state.json_output:
                print_json({"success": False, "failed": e.name, "applied": e.applied, "error": str(e.cause)})
            else:
                if e.applied:
                    print_info(f"Applied before failure: {', '.join(e.applied)}")
                print_error(str(e))
            raise typer.Exit(1)

        if state.json_output:
            print_json({"success": True, **result.to_dict()})
        elif not result.applied:
            print("Nothing to migrate")
        else:
            for name in result.applied:
                print_success(f"Migrated: {name}")
            print_info(f"Batch {result.batch} ({result.count} migrations, {result.duration_ms:.0f} ms)")


@app.command("rollback")
def rollback(
    name: Optional[str] = typer.Option(
        None, "--name", "-n",
        help="Roll back one migration instead of the last batch"
    ),
) -> None:
    """Roll back the last batch, or one named migration."""
    with open_engine(state.config_path, state.role) as engine:
        reverted = engine.migrations.rollback(name)

        if state.json_output:
            print_json({"success": True, "rolled_back": reverted})
        elif not reverted:
            print("Nothing to roll back")
        else:
            for migration in reverted:
                print_success(f"Rolled back: {migration}")


@app.command("status")
def status() -> None:
    """Show executed and pending migrations."""
    with open_engine(state.config_path, state.role) as engine:
        info = engine.migrations.status()

        if state.json_output:
            print_json(info)
            return

        rows = [
            {"Migration": m["name"], "Batch": m["batch"], "Status": "Ran", "Executed": m["executed_at"]}
            for m in info["executed"]
        ]
        rows.extend({"Migration": name, "Batch": "", "Status": "Pending", "Executed": ""} for name in info["pending"])
        print_table(
            rows,
            columns=["Migration", "Batch", "Status", "Executed"],
            title=f"Migrations (last batch: {info['last_batch'] or '-'})",
        )


@app.command("validate")
def validate() -> None:
    """Check that every migration loads and every applied one still exists."""
    with open_engine(state.config_path, state.role) as engine:
        results = engine.migrations.validate()
        problems = [r for r in results if not r["valid"]]

        if state.json_output:
            print_json({"valid": not problems, "migrations": results})
        elif not problems:
            print_success("All migrations are valid")
        else:
            print_table(problems, columns=["name", "error"], title="Invalid migrations")

        if problems:
            raise typer.Exit(1)


@app.command("history")
def history(
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    per_page: int = typer.Option(20, "--per-page", help="Entries per page"),
) -> None:
    """Show the migration ledger, newest first."""
    with open_engine(state.config_path, state.role) as engine:
        info = engine.migrations.history(page=page, per_page=per_page)

        if state.json_output:
            print_json(info)
        else:
            print_table(info["items"], title=f"Migration history (page {page}, total {info['total']})")
