"""Table prefix audit and rename commands."""

from typing import List

import typer

from schema_admin.errors import RenameFailed

from ..config import open_engine
from ..main import state
from ..output import (
    format_megabytes,
    print_dict,
    print_error,
    print_info,
    print_json,
    print_success,
    print_table,
    print_warning,
)

app = typer.Typer(
    name="prefix",
    help="Audit table naming and rename or drop tables in bulk",
    no_args_is_help=True,
)


def _print_plan(plan: dict, title: str) -> None:
    print_table(
        [
            {
                "Table": op["current_name"],
                "New name": op["new_name"] or "",
                "Operation": op["operation"],
                "Rows": op["row_count"],
                "Size": format_megabytes(op["size_mb"]),
            }
            for op in plan["preview"]
        ],
        columns=["Table", "New name", "Operation", "Rows", "Size"],
        title=title,
    )
    if plan["skipped"]:
        print_info(f"Skipped system tables: {', '.join(plan['skipped'])}")
    summary = plan["summary"]
    print_info(
        f"{summary['total_operations']} operations on {summary['tables_affected']} tables, "
        f"about {summary['estimated_time_seconds']}s"
    )


def _print_failure(e: RenameFailed) -> None:
    if state.json_output:
        print_json({
            "success": False,
            "error": str(e.cause),
            "failed_operation": e.operation,
            "execution_log": e.execution_log,
        })
    else:
        print_error(str(e))
        print_warning("All operations were rolled back")


@app.command("analyze")
def analyze() -> None:
    """Report table classification, the dominant prefix and recommendations."""
    with open_engine(state.config_path, state.role) as engine:
        report = engine.auditor.analyze()

        if state.json_output:
            print_json(report)
            return

        print_dict(
            {
                "Database": report["database_name"],
                "Tables": report["table_count"],
                "Current prefix": report["current_prefix"] or "(none)",
                "Confidence": f"{report['confidence']:.0%}",
                "Suggested prefix": report["suggested_prefix"],
            },
            title="Prefix audit",
        )
        print_table(
            [
                {
                    "Table": t["name"],
                    "Class": t["classification"],
                    "Prefix": t["inferred_prefix"] or "",
                    "Rows": t["row_count"],
                    "Size": format_megabytes(t["size_mb"]),
                }
                for t in report["tables"]
            ],
            columns=["Table", "Class", "Prefix", "Rows", "Size"],
        )
        for message in report["messages"]:
            if message["type"] == "warning":
                print_warning(message["message"])
            else:
                print_info(message["message"])

        recommendations = report["recommendations"]
        if recommendations["rename_to_target"]:
            print_table(
                recommendations["rename_to_target"],
                columns=["current", "target"],
                title="Recommended renames",
            )
        if recommendations["drop_framework"]:
            print_info(f"Framework tables: {', '.join(recommendations['drop_framework'])}")
        if recommendations["needs_review"]:
            print_info(f"Needs review: {', '.join(recommendations['needs_review'])}")


@app.command("preview")
def preview(
    new_prefix: str = typer.Argument(..., help="Prefix to apply, e.g. cis_ (empty string strips)"),
    tables: List[str] = typer.Argument(..., help="Tables to rename"),
    include_system: bool = typer.Option(False, "--include-system", help="Do not skip system tables"),
) -> None:
    """Show the rename plan without touching the database."""
    with open_engine(state.config_path, state.role) as engine:
        plan = engine.renamer.preview(new_prefix, tables, skip_system=not include_system).to_dict()

        if state.json_output:
            print_json(plan)
        else:
            _print_plan(plan, title=f"Rename preview ({plan['current_prefix'] or 'no prefix'} -> {new_prefix})")


@app.command("apply")
def apply(
    new_prefix: str = typer.Argument(..., help="Prefix to apply, e.g. cis_ (empty string strips)"),
    tables: List[str] = typer.Argument(..., help="Tables to rename"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip the pre-rename table copies"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan only"),
    include_system: bool = typer.Option(False, "--include-system", help="Do not skip system tables"),
) -> None:
    """Rename tables in one transaction, backing them up first."""
    with open_engine(state.config_path, state.role) as engine:
        try:
            result = engine.renamer.execute(
                new_prefix,
                tables,
                backup=not no_backup,
                dry_run=dry_run,
                skip_system=not include_system,
            )
        except RenameFailed as e:
            _print_failure(e)
            raise typer.Exit(1)

        if state.json_output:
            print_json(result.to_dict())
            return

        if result.plan is not None and (dry_run or state.verbose):
            _print_plan(result.plan.to_dict(), title="Rename plan")
        if result.backup is not None:
            for source, copy in result.backup.tables.items():
                print_info(f"Backed up {source} -> {copy}")
        print_success(result.message)


@app.command("drop")
def drop(
    tables: List[str] = typer.Argument(..., help="Tables to drop"),
    execute: bool = typer.Option(False, "--execute", help="Actually drop (default is a dry run)"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip the pre-drop table copies"),
) -> None:
    """Drop tables, typically leftovers of a web framework."""
    with open_engine(state.config_path, state.role) as engine:
        try:
            result = engine.renamer.drop_tables(tables, backup=not no_backup, dry_run=not execute)
        except RenameFailed as e:
            _print_failure(e)
            raise typer.Exit(1)

        if state.json_output:
            print_json(result.to_dict())
            return

        if result.dry_run and result.plan is not None:
            _print_plan(result.plan.to_dict(), title="Drop preview")
            print_info("Dry run. Pass --execute to drop.")
            return
        print_success(result.message)


@app.command("info")
def info(
    table: str = typer.Argument(..., help="Physical table name"),
) -> None:
    """Show columns, indexes and constraints of one table."""
    with open_engine(state.config_path, state.role) as engine:
        details = engine.auditor.table_info(table)

        if state.json_output:
            print_json(details)
            return

        print_dict(details["status"], title=table)
        print_table(details["columns"], title="Columns")
        if details["indexes"]:
            print_table(details["indexes"], title="Indexes")
        if details["constraints"]:
            print_table(details["constraints"], title="Constraints")


@app.command("history")
def history(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum entries"),
) -> None:
    """Show executed rename and drop operations, newest first."""
    with open_engine(state.config_path, state.role) as engine:
        entries = engine.audit.prefix_history(limit=limit)

        if state.json_output:
            print_json({"operations": entries, "total": len(entries)})
        else:
            print_table(
                entries,
                columns=["operation_type", "source_table", "target_table", "status", "rollback_sql", "created_at"],
                title=f"Prefix operations (Total: {len(entries)})",
            )
