"""End-to-end integration tests — download, build, import, serve, reconcile.

These tests exercise the Orchestrator, Fetcher, StageExecutor,
PipelinePlanner, ReadinessGate, CacheInvalidator, RunLock and BuildLedger
working together on one OSRM-shaped pipeline whose tools are Python
one-liners.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from geoforge.config import GeoforgeSettings
from geoforge.core.fetcher import FetchOptions
from geoforge.core.orchestrator import ExitCode, Orchestrator
from geoforge.models.pipeline import PipelineDefinition, pipeline_from_dict
from geoforge.models.reports import GateStatus, RunStatus
from geoforge.models.stages import StageOutcome

from conftest import FakeResponse, FakeSession, Tools

URL = "https://download.geofabrik.de/asia/indonesia/java-latest.osm.pbf"


def _doc(customize: list[str] | None = None) -> dict:
    return {
        "name": "java-osrm",
        "data_dir": "data",
        "sources": [{"url": URL, "artifact": "pbf"}],
        "artifacts": {
            "pbf": {"path": "java-latest.osm.pbf", "min_size_bytes": 1000},
            "graph": {"path": "java-latest.osrm.ebg", "min_size_bytes": 1000},
            "partition": {"path": "java-latest.osrm.partition", "min_size_bytes": 1000},
            "metrics": {"path": "java-latest.osrm.cell_metrics", "min_size_bytes": 1000},
            "postgis_import": {"path": "postgis-import.stamp", "stamp": True},
        },
        "stages": [
            {
                "stage_id": "extract",
                "command": Tools.write("{graph}"),
                "inputs": ["pbf"],
                "outputs": ["graph"],
            },
            {
                "stage_id": "partition",
                "command": Tools.write("{partition}"),
                "inputs": ["graph"],
                "outputs": ["partition"],
            },
            {
                "stage_id": "customize",
                "command": customize or Tools.write("{metrics}"),
                "inputs": ["partition"],
                "outputs": ["metrics"],
            },
            {
                "stage_id": "import",
                "command": Tools.ok(),
                "inputs": ["pbf"],
                "outputs": ["postgis_import"],
                "requires_services": ["postgis"],
            },
        ],
        "services": [
            {
                "name": "postgis",
                "probe": {"kind": "command", "command": Tools.ok()},
            },
            {
                "name": "osrm-backend",
                "prerequisites": ["graph", "partition", "metrics"],
                "probe": {"kind": "http", "url": "http://localhost:5000/route/v1/driving/0,0;1,1"},
                "poll_interval_seconds": 0.01,
                "ready_timeout_seconds": 5,
            },
        ],
        "caches": [
            {"name": "routes", "path": "cache/routes", "upstream": ["metrics"]},
            {"name": "tiles", "path": "cache/tiles", "upstream": ["postgis_import"]},
        ],
    }


@pytest.fixture
def config() -> GeoforgeSettings:
    return GeoforgeSettings(_env_file=None, fetch_backoff_base=0.0, fetch_backoff_max=0.0)


@pytest.fixture
def fetch_options() -> FetchOptions:
    return FetchOptions(
        max_retries=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0, chunk_size=256
    )


@pytest.fixture
def pipeline(tmp_path: Path) -> PipelineDefinition:
    p = pipeline_from_dict(_doc(), tmp_path)
    p.data_dir.mkdir(parents=True)
    return p


class TestFullPipeline:
    """A cold start, an idempotent rerun and an upstream refresh."""

    def test_cold_start_resumes_interrupted_download(
        self, pipeline, payload, config, fetch_options
    ):
        dropped = FakeResponse(
            200, payload, {"Content-Length": str(len(payload))}, fail_after=1024
        )
        session = FakeSession(payload, script=[dropped])

        report = Orchestrator(pipeline, config=config, session=session).run(
            fetch_options=fetch_options
        )
        assert report.status == RunStatus.SUCCEEDED, report.error_message
        assert report.exit_code == ExitCode.SUCCESS

        # the retry asked for the remainder only
        assert session.requests[1]["Range"] == "bytes=1024-"
        assert pipeline.artifact("pbf").path.read_bytes() == payload
        assert not pipeline.artifact("pbf").temp_path.exists()
        assert report.fetches[0].attempts == 2

        # ties in the graph fall back to declaration order
        assert [s.stage_id for s in report.stages] == ["extract", "partition", "customize", "import"]
        assert all(s.outcome == StageOutcome.SUCCEEDED for s in report.stages)
        assert pipeline.artifact("postgis_import").path.exists()
        assert {g.service: g.status for g in report.gates} == {
            "postgis": GateStatus.READY,
            "osrm-backend": GateStatus.READY,
        }
        assert {c.domain for c in report.caches if c.cleared} == {"routes", "tiles"}

    def test_rerun_does_nothing(self, pipeline, payload, config, fetch_options):
        session = FakeSession(payload)
        Orchestrator(pipeline, config=config, session=session).run(fetch_options=fetch_options)
        downloads = len(session.requests)

        cached = pipeline.cache("routes").path / "r.json"
        cached.write_text("{}")
        again = Orchestrator(pipeline, config=config, session=session).run(
            fetch_options=fetch_options
        )
        assert again.exit_code == 0
        assert again.fetches[0].skipped
        assert all(s.outcome == StageOutcome.SKIPPED for s in again.stages)
        assert cached.exists()
        # only the readiness probe touched the network again
        assert len(session.requests) == downloads + 1

    def test_refreshed_extract_rebuilds_and_clears_caches(
        self, pipeline, payload, config, fetch_options
    ):
        session = FakeSession(payload)
        Orchestrator(pipeline, config=config, session=session).run(fetch_options=fetch_options)
        route = pipeline.cache("routes").path / "r.json"
        tile = pipeline.cache("tiles").path / "t.png"
        route.write_text("{}")
        tile.write_bytes(b"png")

        # a fresher extract: every derived artifact now predates it
        older = pipeline.artifact("pbf").path.stat().st_mtime_ns - 10_000_000_000
        for name in ("graph", "partition", "metrics", "postgis_import"):
            os.utime(pipeline.artifact(name).path, ns=(older, older))

        report = Orchestrator(pipeline, config=config, session=session).run(
            fetch_options=fetch_options
        )
        assert report.exit_code == 0
        assert all(s.outcome == StageOutcome.SUCCEEDED for s in report.stages)
        assert not route.exists()
        assert not tile.exists()

    def test_broken_output_contract_then_fix(self, tmp_path, payload, config, fetch_options):
        broken = pipeline_from_dict(_doc(customize=Tools.write("{metrics}", size=10)), tmp_path)
        broken.data_dir.mkdir(parents=True)
        session = FakeSession(payload)

        first = Orchestrator(broken, config=config, session=session).run(fetch_options=fetch_options)
        assert first.exit_code == ExitCode.STAGE_FAILED
        assert first.failed_stage == "customize"
        failed = next(s for s in first.stages if s.stage_id == "customize")
        assert failed.invalid_outputs == ["metrics"]
        # osrm-backend is never awaited after a failed build
        assert "osrm-backend" not in {g.service for g in first.gates}

        fixed = pipeline_from_dict(_doc(), tmp_path)
        second = Orchestrator(fixed, config=config, session=session).run(fetch_options=fetch_options)
        assert second.exit_code == 0
        assert second.stage_outcome("extract") == StageOutcome.SKIPPED
        assert second.stage_outcome("customize") == StageOutcome.SUCCEEDED

    def test_history_survives_runs(self, pipeline, payload, config, fetch_options):
        session = FakeSession(payload)
        first = Orchestrator(pipeline, config=config, session=session).run(fetch_options=fetch_options)
        second = Orchestrator(pipeline, config=config, session=session).run(fetch_options=fetch_options)

        ledger = Orchestrator(pipeline, config=config).ledger
        assert set(ledger.get_all_run_ids()) == {first.run_id, second.run_id}
        assert ledger.latest_report().run_id == second.run_id
