"""``geoforge run PIPELINE`` — acquire, transform, load, serve.

Fetches every source, runs the stages that are not yet satisfied, waits
for services and reconciles caches.  Exits with the run's exit code and
optionally writes the RunReport as JSON.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.progress import TaskID
from rich.text import Text

from geoforge.cli.common import configure_logging, console, download_progress, load_or_exit
from geoforge.config import settings
from geoforge.core.cancellation import CancellationToken, cancel_on_signals
from geoforge.core.fetcher import FetchOptions, FetchProgress
from geoforge.core.orchestrator import Orchestrator
from geoforge.models.reports import RunReport
from geoforge.monitor.renderer import ReportRenderer


def write_report_json(report: RunReport, destination: str) -> None:
    """Write the report to ``destination``; ``-`` means one line on stdout."""
    payload = report.model_dump_json()
    if destination == "-":
        typer.echo(payload)
    else:
        Path(destination).write_text(payload + "\n", encoding="utf-8")


def run_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline definition (TOML or JSON).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Re-download sources and re-run every stage even if satisfied.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds to wait for each service (overrides the pipeline's value).",
    ),
    json_path: Optional[str] = typer.Option(
        None,
        "--json",
        help="Write the run report as JSON to PATH ('-' for stdout).",
    ),
    keep_partial: bool = typer.Option(
        False,
        "--keep-partial",
        help="Keep interrupted downloads for a later resume.",
    ),
    stages: Optional[list[str]] = typer.Option(
        None,
        "--stage",
        "-s",
        help="Only run these stages (and what they depend on). Repeatable.",
    ),
    serve: bool = typer.Option(
        True,
        "--serve/--no-serve",
        help="Wait for services after the stages complete.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Echo external tool output.",
    ),
) -> None:
    """Run a pipeline to completion and bring its services up."""
    configure_logging()
    pipeline = load_or_exit(pipeline_file)
    cancel = CancellationToken()

    with download_progress() as progress:
        tasks: dict[str, TaskID] = {}

        def on_progress(update: FetchProgress) -> None:
            task = tasks.get(update.artifact)
            if task is None:
                task = progress.add_task(update.artifact, total=update.total)
                tasks[update.artifact] = task
            progress.update(task, completed=update.position, total=update.total)

        def on_line(stage_id: str, line: str) -> None:
            if verbose:
                console.print(Text.assemble((f"{stage_id} ", "dim"), line))

        orchestrator = Orchestrator(
            pipeline,
            cancel=cancel,
            on_progress=on_progress,
            on_line=on_line,
        )
        fetch_options = FetchOptions.from_settings(settings, keep_partial_on_failure=keep_partial)
        with cancel_on_signals(cancel):
            report = orchestrator.run(
                force=force,
                service_timeout=timeout,
                fetch_options=fetch_options,
                only=stages or None,
                serve=serve,
            )

    ReportRenderer(console).print_report(report)
    if json_path:
        write_report_json(report, json_path)
    raise typer.Exit(code=report.exit_code)
