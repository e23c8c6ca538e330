"""Shared test fixtures for geoforge."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import requests

from geoforge.core.artifacts import ArtifactInspector
from geoforge.core.executor import StageExecutor
from geoforge.core.run_ledger import BuildLedger
from geoforge.models.pipeline import PipelineDefinition, pipeline_from_dict


# ---------------------------------------------------------------------------
# Simulated external tools
# ---------------------------------------------------------------------------


class Tools:
    """argv builders for tiny Python programs standing in for real tools.

    Commands go through ``str.format_map`` placeholder resolution, so the
    generated code never contains braces.
    """

    @staticmethod
    def python(code: str, *args: str) -> list[str]:
        return [sys.executable, "-c", code, *args]

    @classmethod
    def write(cls, *targets: str, size: int = 2048) -> list[str]:
        """Write ``size`` bytes to each target path."""
        code = (
            "import sys\n"
            "for path in sys.argv[1:]:\n"
            f"    open(path, 'wb').write(b'x' * {size})\n"
        )
        return cls.python(code, *targets)

    @classmethod
    def fail(cls, status: int = 3, message: str = "boom") -> list[str]:
        return cls.python(f"import sys; print({message!r}); sys.exit({status})")

    @classmethod
    def ok(cls) -> list[str]:
        return cls.python("pass")

    @classmethod
    def sleep(cls, seconds: float) -> list[str]:
        return cls.python(f"import time; time.sleep({seconds})")


@pytest.fixture
def tools() -> type[Tools]:
    return Tools


# ---------------------------------------------------------------------------
# Fake HTTP
# ---------------------------------------------------------------------------


class FakeResponse:
    """Just enough of ``requests.Response`` for the fetcher and probes."""

    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
        *,
        fail_after: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.headers = headers or {}
        self.fail_after = fail_after

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def iter_content(self, chunk_size: int = 1) -> Any:
        for start in range(0, len(self.body), chunk_size):
            if self.fail_after is not None and start >= self.fail_after:
                raise requests.exceptions.ConnectionError("connection reset by peer")
            yield self.body[start:start + chunk_size]


class FakeSession:
    """Serves one payload, honouring Range headers like a real mirror.

    ``script`` items are consumed first: a FakeResponse is returned, an
    exception is raised. With ``etag`` set, responses carry it and an
    ``If-Range`` naming any other version gets the whole body back.
    """

    def __init__(
        self,
        content: bytes = b"",
        *,
        honor_range: bool = True,
        script: list[Any] | None = None,
        etag: str | None = None,
    ) -> None:
        self.content = content
        self.honor_range = honor_range
        self.script = list(script or [])
        self.etag = etag
        self.requests: list[dict[str, str]] = []

    def get(self, url: str, stream: bool = False, headers: dict | None = None, timeout: Any = None):
        headers = dict(headers or {})
        self.requests.append(headers)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item

        total = len(self.content)
        tag = {"ETag": self.etag} if self.etag else {}
        range_header = headers.get("Range")
        if_range = headers.get("If-Range")
        if range_header and self.honor_range and (if_range is None or if_range == self.etag):
            start = int(range_header.removeprefix("bytes=").rstrip("-"))
            if start >= total:
                return FakeResponse(416, headers={"Content-Range": f"bytes */{total}"})
            body = self.content[start:]
            return FakeResponse(
                206,
                body,
                {
                    "Content-Range": f"bytes {start}-{total - 1}/{total}",
                    "Content-Length": str(len(body)),
                    **tag,
                },
            )
        return FakeResponse(200, self.content, {"Content-Length": str(total), **tag})


@pytest.fixture
def payload() -> bytes:
    """A deterministic 4 KiB download body."""
    return bytes(range(256)) * 16


@pytest.fixture
def fake_session(payload: bytes) -> FakeSession:
    return FakeSession(payload)


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def make_pipeline(tmp_dir: Path) -> Callable[[dict[str, Any]], PipelineDefinition]:
    """Factory fixture: build a pipeline rooted in the temp dir, data dir created."""

    def _factory(doc: dict[str, Any]) -> PipelineDefinition:
        pipeline = pipeline_from_dict(doc, tmp_dir)
        pipeline.data_dir.mkdir(parents=True, exist_ok=True)
        return pipeline

    return _factory


@pytest.fixture
def chain_doc() -> Callable[..., dict[str, Any]]:
    """Factory fixture: extract -> partition -> customize over one extract.

    Every stage writes a 2 KiB output by default; pass an argv to replace a
    stage's command.
    """

    def _factory(
        *,
        extract: list[str] | None = None,
        partition: list[str] | None = None,
        customize: list[str] | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "name": "chain",
            "data_dir": "data",
            "artifacts": {
                "pbf": {"path": "region.osm.pbf", "min_size_bytes": 100},
                "graph": {"path": "region.osrm.ebg", "min_size_bytes": 1000},
                "part": {"path": "region.osrm.partition", "min_size_bytes": 1000},
                "metrics": {"path": "region.osrm.cell_metrics", "min_size_bytes": 1000},
            },
            "stages": [
                {
                    "stage_id": "extract",
                    "command": extract or Tools.write("{graph}"),
                    "inputs": ["pbf"],
                    "outputs": ["graph"],
                },
                {
                    "stage_id": "partition",
                    "command": partition or Tools.write("{part}"),
                    "inputs": ["graph"],
                    "outputs": ["part"],
                },
                {
                    "stage_id": "customize",
                    "command": customize or Tools.write("{metrics}"),
                    "inputs": ["part"],
                    "outputs": ["metrics"],
                },
            ],
        }
        doc.update(extra)
        return doc

    return _factory


@pytest.fixture
def chain(make_pipeline, chain_doc) -> PipelineDefinition:
    """The default chain pipeline with its source extract already in place."""
    pipeline = make_pipeline(chain_doc())
    pipeline.artifact("pbf").path.write_bytes(b"p" * 500)
    return pipeline


@pytest.fixture
def inspector() -> ArtifactInspector:
    """An inspector keeping taints in memory."""
    return ArtifactInspector()


@pytest.fixture
def ledger(tmp_dir: Path) -> BuildLedger:
    """Provide a fresh BuildLedger backed by a temp SQLite database."""
    return BuildLedger(tmp_dir / "state" / "ledger.db")


@pytest.fixture
def executor(chain: PipelineDefinition, inspector: ArtifactInspector) -> StageExecutor:
    return StageExecutor(chain, inspector)
