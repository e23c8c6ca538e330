"""``geoforge history PIPELINE [RUN_ID]`` — past runs from the build ledger."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from geoforge.cli.commands.run import write_report_json
from geoforge.cli.common import console, load_or_exit
from geoforge.config import settings
from geoforge.core.run_ledger import BuildLedger
from geoforge.monitor.renderer import ReportRenderer


def history_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline definition (TOML or JSON).",
    ),
    run_id: Optional[str] = typer.Argument(
        None,
        help="Show this run in full. Lists all runs if omitted.",
    ),
    json_path: Optional[str] = typer.Option(
        None,
        "--json",
        help="Write the selected run's report as JSON to PATH ('-' for stdout).",
    ),
) -> None:
    """List previous runs, or show one run's full report."""
    pipeline = load_or_exit(pipeline_file)
    db_path = pipeline.state_dir / settings.ledger_name
    if not db_path.exists():
        console.print(f"[dim]No runs recorded yet for {pipeline.name}.[/dim]")
        return
    ledger = BuildLedger(db_path)

    if run_id is None:
        table = Table(title=f"Runs of {pipeline.name}", header_style="bold cyan")
        table.add_column("Run ID", style="cyan")
        table.add_column("Started")
        table.add_column("Status")
        table.add_column("Failed stage")
        table.add_column("Exit", justify="right")
        for rid in ledger.get_all_run_ids():
            report = ledger.get_report(rid)
            if report is None:
                continue
            table.add_row(
                rid,
                report.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                report.status.value,
                report.failed_stage or "-",
                str(report.exit_code),
            )
        console.print(table)
        return

    report = ledger.get_report(run_id)
    if report is None:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    ReportRenderer(console).print_report(report)
    if json_path:
        write_report_json(report, json_path)
