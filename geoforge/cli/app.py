"""Main Typer application — imports and registers all CLI commands.

Entry point: ``geoforge`` (configured via pyproject.toml console_scripts).

Commands: run, plan, fetch, invalidate, cache-stats, history.
"""

from __future__ import annotations

import typer

from geoforge.cli.commands.caches import cache_stats_cmd, invalidate_cmd
from geoforge.cli.commands.fetch import fetch_cmd
from geoforge.cli.commands.history import history_cmd
from geoforge.cli.commands.plan import plan_cmd
from geoforge.cli.commands.run import run_cmd

app = typer.Typer(
    name="geoforge",
    help="geoforge: build and serve an offline geospatial stack from one regional extract.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="run", help="Fetch, build, and bring up a pipeline.")(run_cmd)
app.command(name="plan", help="Show which stages would run or be skipped.")(plan_cmd)
app.command(name="fetch", help="Download source artifacts only.")(fetch_cmd)
app.command(name="invalidate", help="Clear a cache domain unconditionally.")(invalidate_cmd)
app.command(name="cache-stats", help="Show cache domain sizes and markers.")(cache_stats_cmd)
app.command(name="history", help="Show past runs from the build ledger.")(history_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
