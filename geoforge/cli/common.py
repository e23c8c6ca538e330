"""Helpers shared by the CLI commands: console, logging, pipeline loading."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from geoforge.config import settings
from geoforge.core.orchestrator import ExitCode
from geoforge.errors import ConfigurationError
from geoforge.models.pipeline import PipelineDefinition, load_pipeline

# Human-facing output goes to stderr so ``--json -`` keeps stdout parseable.
console = Console(stderr=True)


def configure_logging(level: str | None = None) -> None:
    """Route all geoforge logging through a RichHandler on the shared console."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
        force=True,
    )


def load_or_exit(path: Path) -> PipelineDefinition:
    """Load a pipeline definition, exiting with the configuration code on error."""
    try:
        return load_pipeline(path)
    except ConfigurationError as exc:
        console.print(f"[bold red]Invalid pipeline definition:[/bold red] {exc}")
        raise typer.Exit(code=int(ExitCode.CONFIGURATION_ERROR))


def download_progress() -> Progress:
    """Progress display for source downloads, sharing the log console."""
    return Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
    )
