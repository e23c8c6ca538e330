"""``geoforge fetch PIPELINE`` — acquire the source artifacts only."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from geoforge.cli.common import configure_logging, console, download_progress, load_or_exit
from geoforge.config import settings
from geoforge.core.cancellation import CancellationToken, cancel_on_signals
from geoforge.core.fetcher import FetchOptions, FetchProgress
from geoforge.core.orchestrator import Orchestrator, exit_code_for
from geoforge.errors import GeoforgeError


def fetch_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline definition (TOML or JSON).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Download even if the destination is already valid.",
    ),
    keep_partial: bool = typer.Option(
        False,
        "--keep-partial",
        help="Keep interrupted downloads for a later resume.",
    ),
) -> None:
    """Download every declared source, resuming partial transfers."""
    configure_logging()
    pipeline = load_or_exit(pipeline_file)
    cancel = CancellationToken()
    options = FetchOptions.from_settings(
        settings, force=force, keep_partial_on_failure=keep_partial
    )

    with download_progress() as progress:
        tasks = {}

        def on_progress(update: FetchProgress) -> None:
            if update.artifact not in tasks:
                tasks[update.artifact] = progress.add_task(update.artifact, total=update.total)
            progress.update(tasks[update.artifact], completed=update.position, total=update.total)

        orchestrator = Orchestrator(pipeline, cancel=cancel, on_progress=on_progress)
        try:
            with cancel_on_signals(cancel), orchestrator.lock:
                reports = orchestrator.fetch_sources(options)
        except GeoforgeError as exc:
            console.print(f"[bold red]Fetch failed:[/bold red] {exc}")
            raise typer.Exit(code=int(exit_code_for(exc.kind)))

    table = Table(title="Sources", header_style="bold cyan")
    table.add_column("Artifact", style="cyan")
    table.add_column("Result")
    table.add_column("Bytes", justify="right")
    table.add_column("Attempts", justify="right")
    for report in reports:
        result = "already valid" if report.skipped else "downloaded"
        if report.resumed_from:
            result = f"resumed at byte {report.resumed_from}"
        table.add_row(report.artifact, result, str(report.size_bytes), str(report.attempts))
    console.print(table)
