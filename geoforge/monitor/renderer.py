"""Rich terminal renderer for geoforge run reports and plans.

Color scheme
------------
- green     : SUCCEEDED
- red       : FAILED
- dim       : SKIPPED
- yellow    : NOT ATTEMPTED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from geoforge.core.planner import StagePlan
from geoforge.models.caches import CacheStats
from geoforge.models.reports import GateStatus, RunReport, RunStatus
from geoforge.models.stages import StageOutcome

# ---------------------------------------------------------------------------
# Outcome -> Rich style mapping
# ---------------------------------------------------------------------------

_OUTCOME_STYLES: dict[StageOutcome, str] = {
    StageOutcome.SUCCEEDED: "bold green",
    StageOutcome.FAILED: "bold red",
    StageOutcome.SKIPPED: "dim",
    StageOutcome.NOT_ATTEMPTED: "yellow",
}

_OUTCOME_LABELS: dict[StageOutcome, str] = {
    StageOutcome.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageOutcome.FAILED: "[bold red]FAILED[/bold red]",
    StageOutcome.SKIPPED: "[dim]SKIPPED[/dim]",
    StageOutcome.NOT_ATTEMPTED: "[yellow]NOT ATTEMPTED[/yellow]",
}

_GATE_LABELS: dict[GateStatus, str] = {
    GateStatus.READY: "[green]ready[/green]",
    GateStatus.TIMED_OUT: "[yellow]timed out[/yellow]",
    GateStatus.PREREQUISITES_MISSING: "[bold red]prerequisites missing[/bold red]",
    GateStatus.PROBE_ERROR: "[bold red]probe error[/bold red]",
}

_STATUS_BORDERS: dict[RunStatus, str] = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.DEGRADED: "yellow",
    RunStatus.FAILED: "red",
}


def _human_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


class ReportRenderer:
    """Renders run reports, plans, and cache statistics.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Run report
    # ------------------------------------------------------------------

    def render_report(self, report: RunReport) -> Panel:
        """Render a RunReport as a Panel of stage, service and cache tables."""
        parts: list = [self._build_stage_table(report)]

        if report.fetches:
            parts += [Text(""), self._build_fetch_table(report)]
        if report.gates:
            parts += [Text(""), self._build_gate_table(report)]
        if report.caches:
            cleared = [c.domain for c in report.caches if c.cleared]
            line = ", ".join(cleared) if cleared else "none"
            parts += [Text(""), Text.from_markup(f"[bold]Caches cleared:[/bold] {line}")]

        counts = report.summary()
        summary = "  |  ".join(
            [
                f"[bold]Run:[/bold] {report.run_id}",
                f"[bold]Status:[/bold] {report.status.value}",
                f"[bold]Ran:[/bold] {counts[StageOutcome.SUCCEEDED.value]}",
                f"[bold]Skipped:[/bold] {counts[StageOutcome.SKIPPED.value]}",
                f"[bold]Elapsed:[/bold] {report.elapsed_seconds:.1f}s",
                f"[bold]Exit:[/bold] {report.exit_code}",
            ]
        )
        parts += [Text(""), Text.from_markup(summary)]
        if report.error_message:
            parts.append(Text(report.error_message, style="red"))

        return Panel(
            Group(*parts),
            title=f"[bold]geoforge: {report.pipeline}[/bold]",
            subtitle=f"Finished: {report.finished_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style=_STATUS_BORDERS[report.status],
            padding=(1, 2),
        )

    def _build_stage_table(self, report: RunReport) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("Outcome", min_width=14, justify="center")
        table.add_column("Exit", justify="right", width=5)
        table.add_column("Elapsed", justify="right", width=9)
        table.add_column("Details", min_width=20)

        for i, result in enumerate(report.stages):
            style = _OUTCOME_STYLES[result.outcome]
            exit_code = "" if result.exit_code is None else str(result.exit_code)
            elapsed = f"{result.elapsed_seconds:.1f}s" if result.elapsed_seconds else ""
            table.add_row(
                str(i),
                f"[{style}]{result.stage_id}[/{style}]",
                _OUTCOME_LABELS[result.outcome],
                exit_code,
                elapsed,
                result.reason or "[dim]-[/dim]",
            )
        return table

    @staticmethod
    def _build_fetch_table(report: RunReport) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Source")
        table.add_column("Result", justify="center")
        table.add_column("Size", justify="right")
        table.add_column("Attempts", justify="right")
        for fetch in report.fetches:
            if fetch.skipped:
                result = "[dim]already valid[/dim]"
            elif fetch.resumed_from:
                result = f"[green]resumed at {_human_bytes(fetch.resumed_from)}[/green]"
            else:
                result = "[green]downloaded[/green]"
            table.add_row(
                fetch.artifact, result, _human_bytes(fetch.size_bytes), str(fetch.attempts)
            )
        return table

    @staticmethod
    def _build_gate_table(report: RunReport) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Service")
        table.add_column("Status", justify="center")
        table.add_column("Probes", justify="right")
        table.add_column("Details")
        for gate in report.gates:
            details = gate.last_reason
            if gate.missing_prerequisites:
                details = "missing: " + ", ".join(gate.missing_prerequisites)
            table.add_row(
                gate.service,
                _GATE_LABELS[gate.status],
                str(gate.probes),
                details or "[dim]-[/dim]",
            )
        return table

    def print_report(self, report: RunReport) -> None:
        self.console.print(self.render_report(report))

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def render_plan(self, pipeline: str, plans: list[StagePlan]) -> Table:
        table = Table(title=f"Plan: {pipeline}", header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("Action", justify="center")
        table.add_column("Upstream")
        table.add_column("Why")
        for i, plan in enumerate(plans):
            action = "[yellow]run[/yellow]" if plan.will_run else "[dim]skip[/dim]"
            table.add_row(
                str(i),
                plan.label,
                action,
                ", ".join(plan.upstream) or "[dim]-[/dim]",
                "; ".join(plan.reasons) or "[dim]outputs valid and fresh[/dim]",
            )
        return table

    # ------------------------------------------------------------------
    # Caches
    # ------------------------------------------------------------------

    def render_cache_stats(self, stats: list[CacheStats]) -> Table:
        table = Table(title="Cache domains", header_style="bold cyan", expand=True)
        table.add_column("Domain", style="cyan")
        table.add_column("Path")
        table.add_column("Files", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Reconciled for", justify="right")
        for entry in stats:
            marker = (
                str(entry.upstream_timestamp_ns)
                if entry.upstream_timestamp_ns is not None
                else "[dim]never[/dim]"
            )
            table.add_row(
                entry.domain,
                str(entry.path),
                str(entry.files),
                _human_bytes(entry.size_bytes),
                marker,
            )
        return table
