"""``geoforge invalidate`` and ``geoforge cache-stats`` — cache domain tools."""

from __future__ import annotations

from pathlib import Path

import typer

from geoforge.cli.common import console, configure_logging, load_or_exit
from geoforge.core.cache_invalidator import CacheInvalidator
from geoforge.core.orchestrator import ExitCode, exit_code_for
from geoforge.core.run_lock import RunLock
from geoforge.config import settings
from geoforge.errors import GeoforgeError
from geoforge.monitor.renderer import ReportRenderer


def invalidate_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline definition (TOML or JSON).",
    ),
    domain: str = typer.Argument(
        ...,
        help="Name of the cache domain to clear.",
    ),
) -> None:
    """Clear a cache domain now, regardless of upstream timestamps."""
    configure_logging()
    pipeline = load_or_exit(pipeline_file)
    try:
        cache = pipeline.cache(domain)
    except KeyError:
        known = ", ".join(c.name for c in pipeline.caches) or "none"
        console.print(f"[bold red]Unknown cache domain:[/bold red] {domain} (known: {known})")
        raise typer.Exit(code=int(ExitCode.CONFIGURATION_ERROR))

    try:
        with RunLock(pipeline.state_dir / settings.lock_name):
            report = CacheInvalidator().invalidate(cache)
    except GeoforgeError as exc:
        console.print(f"[bold red]Invalidate failed:[/bold red] {exc}")
        raise typer.Exit(code=int(exit_code_for(exc.kind)))

    console.print(
        f"[green]Cache {report.domain} cleared[/green] "
        f"({report.entries_removed} entries removed)"
    )


def cache_stats_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline definition (TOML or JSON).",
    ),
) -> None:
    """Show file count, size and reconcile marker of every cache domain."""
    pipeline = load_or_exit(pipeline_file)
    if not pipeline.caches:
        console.print("[dim]No cache domains declared.[/dim]")
        return
    invalidator = CacheInvalidator()
    stats = [invalidator.stats(cache) for cache in pipeline.caches]
    console.print(ReportRenderer(console).render_cache_stats(stats))
