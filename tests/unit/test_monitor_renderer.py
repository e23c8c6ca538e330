"""Unit tests for the ReportRenderer.

Covers outcome/status style mappings and the text that ends up on the
terminal for reports, plans and cache statistics.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from rich.console import Console
from rich.panel import Panel

from geoforge.core.planner import StagePlan
from geoforge.models.caches import CacheStats
from geoforge.models.reports import (
    CacheReport,
    FetchReport,
    GateResult,
    GateStatus,
    RunReport,
    RunStatus,
)
from geoforge.models.stages import StageOutcome, StageResult
from geoforge.monitor.renderer import (
    _GATE_LABELS,
    _OUTCOME_LABELS,
    _OUTCOME_STYLES,
    _STATUS_BORDERS,
    ReportRenderer,
    _human_bytes,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_report(status: RunStatus = RunStatus.SUCCEEDED, **kwargs) -> RunReport:
    stages = kwargs.pop(
        "stages",
        [
            StageResult(stage_id="extract", outcome=StageOutcome.SKIPPED, reason="outputs valid and fresh"),
            StageResult(stage_id="partition", outcome=StageOutcome.SUCCEEDED, exit_code=0, elapsed_seconds=12.5),
        ],
    )
    return RunReport(run_id="gf-test-0001", pipeline="java-osrm", status=status, stages=stages, **kwargs)


def _render(renderable) -> str:
    console = Console(file=None, force_terminal=True, width=160)
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


# ---------------------------------------------------------------------------
# Test: mappings
# ---------------------------------------------------------------------------


class TestMappings:
    def test_every_outcome_has_style_and_label(self):
        for outcome in StageOutcome:
            assert outcome in _OUTCOME_STYLES
            assert outcome in _OUTCOME_LABELS

    def test_every_gate_status_has_label(self):
        for status in GateStatus:
            assert status in _GATE_LABELS

    def test_every_run_status_has_border(self):
        for status in RunStatus:
            assert status in _STATUS_BORDERS

    @pytest.mark.parametrize(
        "size, expected",
        [(512, "512 B"), (2048, "2.0 KiB"), (5 * 1024 * 1024, "5.0 MiB")],
    )
    def test_human_bytes(self, size, expected):
        assert _human_bytes(size) == expected


# ---------------------------------------------------------------------------
# Test: run report
# ---------------------------------------------------------------------------


class TestRenderReport:
    def test_returns_panel(self):
        assert isinstance(ReportRenderer().render_report(_make_report()), Panel)

    def test_includes_run_and_stages(self):
        output = _render(ReportRenderer().render_report(_make_report()))
        assert "gf-test-0001" in output
        assert "java-osrm" in output
        assert "partition" in output
        assert "SKIPPED" in output

    def test_failed_report_shows_error(self):
        report = _make_report(
            RunStatus.FAILED,
            stages=[
                StageResult(stage_id="extract", outcome=StageOutcome.FAILED, exit_code=1),
                StageResult(stage_id="partition", outcome=StageOutcome.NOT_ATTEMPTED),
            ],
            failed_stage="extract",
            error_message="Stage extract failed: exit status 1",
            exit_code=4,
        )
        output = _render(ReportRenderer().render_report(report))
        assert "FAILED" in output
        assert "NOT ATTEMPTED" in output
        assert "Stage extract failed" in output

    def test_fetch_gate_and_cache_sections(self):
        report = _make_report(
            RunStatus.DEGRADED,
            fetches=[
                FetchReport(
                    artifact="pbf",
                    url="https://download.geofabrik.de/asia/indonesia/java-latest.osm.pbf",
                    resumed_from=1024,
                    size_bytes=4096,
                    attempts=2,
                )
            ],
            gates=[
                GateResult(service="osrm-backend", status=GateStatus.TIMED_OUT, probes=7, last_reason="HTTP 503"),
                GateResult(
                    service="postgis",
                    status=GateStatus.PREREQUISITES_MISSING,
                    missing_prerequisites=["postgis_import"],
                ),
            ],
            caches=[CacheReport(domain="routes", cleared=True, reason="upstream changed")],
        )
        output = _render(ReportRenderer().render_report(report))
        assert "resumed at 1.0 KiB" in output
        assert "timed out" in output
        assert "missing: postgis_import" in output
        assert "Caches cleared:" in output
        assert "routes" in output

    def test_print_report(self):
        console = Console(file=None, force_terminal=True, width=160)
        with console.capture() as capture:
            ReportRenderer(console=console).print_report(_make_report())
        assert "gf-test-0001" in capture.get()


# ---------------------------------------------------------------------------
# Test: plan and cache stats
# ---------------------------------------------------------------------------


class TestRenderPlan:
    def test_plan_rows(self):
        plans = [
            StagePlan(stage_id="extract", label="extract", will_run=False),
            StagePlan(
                stage_id="partition",
                label="Partition graph",
                will_run=True,
                reasons=["missing output graph"],
                upstream=["extract"],
            ),
        ]
        output = _render(ReportRenderer().render_plan("java-osrm", plans))
        assert "Plan: java-osrm" in output
        assert "skip" in output
        assert "run" in output
        assert "missing output graph" in output
        assert "outputs valid and fresh" in output


class TestRenderCacheStats:
    def test_marker_shown_or_never(self):
        stats = [
            CacheStats(domain="tiles", path=Path("/srv/cache/tiles"), files=3, size_bytes=2048),
            CacheStats(
                domain="routes",
                path=Path("/srv/cache/routes"),
                upstream_timestamp_ns=1_700_000_000_000_000_000,
            ),
        ]
        output = _render(ReportRenderer().render_cache_stats(stats))
        assert "never" in output
        assert "1700000000000000000" in output
        assert "2.0 KiB" in output
