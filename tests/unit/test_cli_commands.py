"""Unit tests for the CLI — Typer command registration and exit codes.

Exercises the commands through typer.testing.CliRunner against small
JSON pipeline files whose stages are Python one-liners.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from geoforge.cli.app import app
from geoforge.models.reports import RunReport

runner = CliRunner()


@pytest.fixture
def pipeline_file(tmp_dir: Path, chain_doc):
    """Factory fixture: write a chain pipeline as JSON, extract in place."""

    def _factory(**kwargs) -> Path:
        doc = chain_doc(**kwargs)
        path = tmp_dir / "chain.json"
        path.write_text(json.dumps(doc))
        data_dir = tmp_dir / "data"
        data_dir.mkdir(exist_ok=True)
        (data_dir / "region.osm.pbf").write_bytes(b"p" * 500)
        return path

    return _factory


CACHES = [{"name": "routes", "path": "cache/routes", "upstream": ["metrics"]}]


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_help_flag(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "plan", "fetch", "invalidate", "cache-stats", "history"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["run", "plan", "fetch", "invalidate", "history"])
    def test_command_help(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# Test: run
# ---------------------------------------------------------------------------


class TestRunCommand:
    def test_successful_run_writes_json(self, pipeline_file, tmp_dir):
        report_path = tmp_dir / "report.json"
        result = runner.invoke(app, ["run", str(pipeline_file()), "--json", str(report_path)])
        assert result.exit_code == 0, result.output

        report = RunReport.model_validate_json(report_path.read_text())
        assert report.status.value == "succeeded"
        assert report.summary()["succeeded"] == 3

    def test_rerun_skips(self, pipeline_file, tmp_dir):
        path = pipeline_file()
        runner.invoke(app, ["run", str(path)])
        report_path = tmp_dir / "again.json"
        result = runner.invoke(app, ["run", str(path), "--json", str(report_path)])
        assert result.exit_code == 0
        report = RunReport.model_validate_json(report_path.read_text())
        assert report.summary()["skipped"] == 3

    def test_failing_stage_exit_code(self, pipeline_file, tools):
        path = pipeline_file(partition=tools.fail(9, "partition blew up"))
        result = runner.invoke(app, ["run", str(path)])
        assert result.exit_code == 4

    def test_missing_pipeline_file(self, tmp_dir):
        result = runner.invoke(app, ["run", str(tmp_dir / "absent.toml")])
        assert result.exit_code == 2

    def test_stage_option(self, pipeline_file, tmp_dir):
        report_path = tmp_dir / "only.json"
        result = runner.invoke(
            app, ["run", str(pipeline_file()), "--stage", "extract", "--json", str(report_path)]
        )
        assert result.exit_code == 0
        report = RunReport.model_validate_json(report_path.read_text())
        assert [s.stage_id for s in report.stages] == ["extract"]


# ---------------------------------------------------------------------------
# Test: plan / fetch
# ---------------------------------------------------------------------------


class TestPlanCommand:
    def test_plan_lists_stages(self, pipeline_file, tmp_dir):
        result = runner.invoke(app, ["plan", str(pipeline_file())])
        assert result.exit_code == 0
        assert "extract" in result.output
        assert "customize" in result.output
        # planning runs nothing
        assert not (tmp_dir / "data" / "region.osrm.ebg").exists()

    def test_plan_rejects_missing_tool(self, pipeline_file):
        path = pipeline_file(customize=["geoforge-no-such-tool"])
        result = runner.invoke(app, ["plan", str(path)])
        assert result.exit_code == 2


class TestFetchCommand:
    def test_fetch_without_sources(self, pipeline_file):
        result = runner.invoke(app, ["fetch", str(pipeline_file())])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# Test: caches
# ---------------------------------------------------------------------------


class TestCacheCommands:
    def test_stats_without_domains(self, pipeline_file):
        result = runner.invoke(app, ["cache-stats", str(pipeline_file())])
        assert result.exit_code == 0
        assert "No cache domains" in result.output

    def test_stats_with_domain(self, pipeline_file):
        result = runner.invoke(app, ["cache-stats", str(pipeline_file(caches=CACHES))])
        assert result.exit_code == 0
        assert "routes" in result.output

    def test_invalidate_unknown_domain(self, pipeline_file):
        result = runner.invoke(app, ["invalidate", str(pipeline_file(caches=CACHES)), "tiles"])
        assert result.exit_code == 2

    def test_invalidate_known_domain(self, pipeline_file, tmp_dir):
        cache_dir = tmp_dir / "cache" / "routes"
        cache_dir.mkdir(parents=True)
        (cache_dir / "r1.json").write_text("{}")

        result = runner.invoke(app, ["invalidate", str(pipeline_file(caches=CACHES)), "routes"])
        assert result.exit_code == 0
        assert not (cache_dir / "r1.json").exists()


# ---------------------------------------------------------------------------
# Test: history
# ---------------------------------------------------------------------------


class TestHistoryCommand:
    def test_no_runs_yet(self, pipeline_file):
        result = runner.invoke(app, ["history", str(pipeline_file())])
        assert result.exit_code == 0
        assert "No runs recorded" in result.output

    def test_lists_and_shows_runs(self, pipeline_file, tmp_dir):
        path = pipeline_file()
        report_path = tmp_dir / "run.json"
        runner.invoke(app, ["run", str(path), "--json", str(report_path)])
        run_id = RunReport.model_validate_json(report_path.read_text()).run_id

        listing = runner.invoke(app, ["history", str(path)])
        assert listing.exit_code == 0
        assert "succeeded" in listing.output

        exported = tmp_dir / "history.json"
        shown = runner.invoke(app, ["history", str(path), run_id, "--json", str(exported)])
        assert shown.exit_code == 0
        assert RunReport.model_validate_json(exported.read_text()).run_id == run_id

    def test_unknown_run(self, pipeline_file):
        path = pipeline_file()
        runner.invoke(app, ["run", str(path)])
        result = runner.invoke(app, ["history", str(path), "gf-nope"])
        assert result.exit_code == 1
