"""Run report models — outputs of fetches, gates, cache reconciles, and whole runs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from geoforge.models.stages import StageOutcome, StageResult


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"  # built, but a service did not become ready in time
    FAILED = "failed"


class FetchReport(BaseModel):
    """One source acquisition."""

    model_config = ConfigDict(frozen=True)

    artifact: str
    url: str
    skipped: bool = False  # destination already valid
    resumed_from: int = 0  # byte offset the transfer resumed at
    bytes_transferred: int = 0
    size_bytes: int = 0
    attempts: int = 0
    elapsed_seconds: float = 0.0


class GateStatus(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    PREREQUISITES_MISSING = "prerequisites_missing"
    PROBE_ERROR = "probe_error"


class GateResult(BaseModel):
    """Outcome of waiting for one service."""

    model_config = ConfigDict(frozen=True)

    service: str
    status: GateStatus
    elapsed_seconds: float = 0.0
    probes: int = 0  # number of probe attempts
    last_reason: str = ""  # last probe failure, or why the gate refused
    missing_prerequisites: list[str] = Field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.status == GateStatus.READY


class CacheReport(BaseModel):
    """Outcome of a reconcile or invalidate call on one cache domain."""

    model_config = ConfigDict(frozen=True)

    domain: str
    cleared: bool
    upstream_timestamp_ns: int = 0
    recorded_timestamp_ns: int = 0  # marker value before this call
    entries_removed: int = 0
    reason: str = ""


class RunReport(BaseModel):
    """Ordered log of one orchestrator invocation.  Immutable once built."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline: str
    status: RunStatus
    fetches: list[FetchReport] = Field(default_factory=list)
    stages: list[StageResult] = Field(default_factory=list)
    gates: list[GateResult] = Field(default_factory=list)
    caches: list[CacheReport] = Field(default_factory=list)
    failed_stage: str | None = None
    error_kind: str | None = None
    error_message: str = ""
    exit_code: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    elapsed_seconds: float = 0.0

    def stage_outcome(self, stage_id: str) -> StageOutcome | None:
        for result in self.stages:
            if result.stage_id == stage_id:
                return result.outcome
        return None

    def summary(self) -> dict[str, int]:
        """Count of stages per outcome, for one-line summaries."""
        counts: dict[str, int] = {o.value: 0 for o in StageOutcome}
        for result in self.stages:
            counts[result.outcome.value] += 1
        return counts
