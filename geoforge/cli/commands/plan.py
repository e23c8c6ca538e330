"""``geoforge plan PIPELINE`` — show what a run would do, without doing it."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from geoforge.cli.common import configure_logging, console, load_or_exit
from geoforge.core.orchestrator import Orchestrator, exit_code_for
from geoforge.core.planner import PipelinePlanner
from geoforge.errors import GeoforgeError
from geoforge.monitor.renderer import ReportRenderer


def plan_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline definition (TOML or JSON).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Plan as if --force were passed to run.",
    ),
    stages: Optional[list[str]] = typer.Option(
        None,
        "--stage",
        "-s",
        help="Only plan these stages (and what they depend on). Repeatable.",
    ),
) -> None:
    """Dry run: list sources and stages with the reason each would run or skip."""
    configure_logging()
    pipeline = load_or_exit(pipeline_file)
    orchestrator = Orchestrator(pipeline)

    try:
        planner = PipelinePlanner(pipeline, orchestrator.executor)
        plans = planner.describe(planner.plan(stages or None), force=force)
    except GeoforgeError as exc:
        console.print(f"[bold red]Cannot plan {pipeline.name}:[/bold red] {exc}")
        raise typer.Exit(code=int(exit_code_for(exc.kind)))

    console.print()
    for source in pipeline.sources:
        spec = pipeline.artifact(source.artifact)
        if not force and orchestrator.inspector.is_valid(spec):
            console.print(f"[dim]source {source.artifact}: valid, skip download[/dim]")
        else:
            console.print(f"[yellow]source {source.artifact}: fetch {source.url}[/yellow]")
    console.print(ReportRenderer(console).render_plan(pipeline.name, plans))
