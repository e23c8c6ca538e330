"""Pipeline orchestrator — acquire, transform, load, serve.

The Orchestrator wires together the BuildLedger, ArtifactInspector,
Fetcher, StageExecutor, PipelinePlanner, ReadinessGate, and
CacheInvalidator into one linear flow:

1. take the data-directory lock
2. fetch every source artifact
3. plan (cycle and missing-command checks) and execute stages, gating
   services a stage requires and reconciling caches after every stage
   that actually ran
4. await the remaining services
5. reconcile every cache domain

It produces exactly one RunReport and one exit code per invocation.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from enum import IntEnum

import requests

from geoforge.config import GeoforgeSettings, settings as default_settings
from geoforge.core.artifacts import ArtifactInspector
from geoforge.core.cache_invalidator import CacheInvalidator
from geoforge.core.cancellation import CancellationToken
from geoforge.core.executor import LineCallback, StageExecutor
from geoforge.core.fetcher import Fetcher, FetchOptions, ProgressCallback
from geoforge.core.planner import PipelinePlanner
from geoforge.core.readiness import ReadinessGate
from geoforge.core.run_ledger import BuildLedger
from geoforge.core.run_lock import RunLock
from geoforge.errors import (
    ExternalToolFailure,
    GeoforgeError,
    PrerequisitesMissingError,
    ProbeError,
    ReadinessTimeoutError,
)
from geoforge.models.ledger import StageEvent
from geoforge.models.pipeline import PipelineDefinition
from geoforge.models.reports import (
    CacheReport,
    FetchReport,
    GateResult,
    GateStatus,
    RunReport,
    RunStatus,
)
from geoforge.models.services import ServiceDefinition
from geoforge.models.stages import StageDefinition, StageOutcome, StageResult

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit status of ``geoforge run``."""

    SUCCESS = 0
    CONFIGURATION_ERROR = 2
    FETCH_FAILED = 3
    STAGE_FAILED = 4
    PREREQUISITES_MISSING = 5
    READINESS_TIMEOUT = 6
    PROBE_ERROR = 7
    LOCK_HELD = 8
    CACHE_FAILED = 9
    CANCELLED = 130


_EXIT_CODES: dict[str, ExitCode] = {
    "configuration_error": ExitCode.CONFIGURATION_ERROR,
    "fetch_failed": ExitCode.FETCH_FAILED,
    "transient_io": ExitCode.FETCH_FAILED,
    "corrupt_artifact": ExitCode.FETCH_FAILED,
    "disk_full": ExitCode.FETCH_FAILED,
    "stage_failed": ExitCode.STAGE_FAILED,
    "prerequisites_missing": ExitCode.PREREQUISITES_MISSING,
    "readiness_timeout": ExitCode.READINESS_TIMEOUT,
    "probe_error": ExitCode.PROBE_ERROR,
    "lock_held": ExitCode.LOCK_HELD,
    "cache_invalidation_failed": ExitCode.CACHE_FAILED,
    "cancelled": ExitCode.CANCELLED,
}


def exit_code_for(kind: str | None) -> ExitCode:
    if kind is None:
        return ExitCode.SUCCESS
    return _EXIT_CODES.get(kind, ExitCode.STAGE_FAILED)


def gate_error(result: GateResult) -> GeoforgeError:
    """Turn a non-ready GateResult into the matching error."""
    if result.status == GateStatus.PREREQUISITES_MISSING:
        return PrerequisitesMissingError(
            f"Service {result.service} not started: {result.last_reason}",
            service=result.service,
            missing=result.missing_prerequisites,
        )
    if result.status == GateStatus.TIMED_OUT:
        return ReadinessTimeoutError(
            f"Service {result.service} not ready after {result.elapsed_seconds:.0f}s "
            f"({result.probes} probes); last failure: {result.last_reason}; left running",
            service=result.service,
            elapsed=result.elapsed_seconds,
            last_reason=result.last_reason,
        )
    return ProbeError(
        f"Service {result.service}: {result.last_reason}", service=result.service
    )


def _gate_failure(results: list[GateResult]) -> tuple[RunStatus, GeoforgeError]:
    """Status and error for the final gates that did not come up.

    A service that was refused or failed to start fails the run; if every
    failure is a timeout the stack is built but degraded.
    """
    fatal = [r for r in results if r.status != GateStatus.TIMED_OUT]
    if fatal:
        return RunStatus.FAILED, gate_error(fatal[0])
    return RunStatus.DEGRADED, gate_error(results[0])


class Orchestrator:
    """Top-level build-and-bring-up coordinator for one pipeline.

    Parameters
    ----------
    pipeline:
        The static pipeline definition.
    config:
        Operator settings.  Uses the module-level settings if not provided.
    cancel:
        Process-wide cancellation token (the CLI wires it to SIGINT/SIGTERM).
    session:
        HTTP session shared by the fetcher and HTTP probes.
    on_progress:
        Receives throttled download progress.
    on_line:
        Receives every output line of external tools.
    run_id:
        Explicit run id; generated if omitted.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        config: GeoforgeSettings | None = None,
        cancel: CancellationToken | None = None,
        session: requests.Session | None = None,
        on_progress: ProgressCallback | None = None,
        on_line: LineCallback | None = None,
        run_id: str | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.config = config or default_settings
        self.cancel = cancel or CancellationToken()

        state_dir = pipeline.state_dir
        self.ledger = BuildLedger(state_dir / self.config.ledger_name)
        self.lock = RunLock(state_dir / self.config.lock_name)
        self.inspector = ArtifactInspector(self.ledger)
        self.fetcher = Fetcher(
            self.inspector, session=session, cancel=self.cancel, on_progress=on_progress
        )
        self.executor = StageExecutor(
            pipeline, self.inspector, cancel=self.cancel, on_line=on_line, config=self.config
        )
        self.gate = ReadinessGate(pipeline, self.inspector, session=session, cancel=self.cancel)
        self.invalidator = CacheInvalidator()

        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.run_id = run_id or f"gf-{ts}-{uuid.uuid4().hex[:4]}"

        # Per-run accumulators
        self._fetches: list[FetchReport] = []
        self._stages: list[StageResult] = []
        self._gates: list[GateResult] = []
        self._caches: list[CacheReport] = []
        self._ready: set[str] = set()
        self._service_timeout: float | None = None

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def fetch_sources(self, options: FetchOptions | None = None) -> list[FetchReport]:
        """Acquire every declared source artifact."""
        options = options or FetchOptions.from_settings(self.config)
        reports = []
        for source in self.pipeline.sources:
            report = self.fetcher.fetch(source.url, self.pipeline.artifact(source.artifact), options)
            reports.append(report)
            self._fetches.append(report)
        return reports

    def await_service(self, service: ServiceDefinition) -> GateResult:
        timeout = self._service_timeout
        if timeout is None:
            timeout = self.config.default_service_timeout
        result = self.gate.await_ready(service, timeout)
        self._gates.append(result)
        if result.ready:
            self._ready.add(service.name)
        return result

    def reconcile_caches(self, artifact_names: list[str] | None = None) -> list[CacheReport]:
        """Reconcile domains fed by the given artifacts (all domains if None)."""
        domains = (
            self.pipeline.caches
            if artifact_names is None
            else self.pipeline.caches_fed_by(artifact_names)
        )
        reports = []
        for domain in domains:
            upstream = [self.pipeline.artifact(name) for name in domain.upstream]
            report = self.invalidator.reconcile(domain, upstream)
            reports.append(report)
            self._caches.append(report)
        return reports

    def _services_in_scope(self, only: list[str] | None) -> list[ServiceDefinition]:
        """Services to await after the stages.

        A run limited to some stages only awaits services whose
        prerequisites are all valid; the rest were never meant to be built.
        """
        if only is None:
            return list(self.pipeline.services)
        in_scope = []
        for service in self.pipeline.services:
            if self.gate.missing_prerequisites(service):
                logger.info("Not awaiting %s: outside the requested stages", service.name)
                continue
            in_scope.append(service)
        return in_scope

    def _before_stage(self, stage: StageDefinition) -> None:
        for name in stage.requires_services:
            if name in self._ready:
                continue
            result = self.await_service(self.pipeline.service(name))
            if not result.ready:
                raise gate_error(result)

    def _after_stage(self, stage: StageDefinition, result: StageResult) -> None:
        self._stages.append(result)
        self.ledger.record_stage(
            StageEvent(
                run_id=self.run_id,
                stage_id=stage.stage_id,
                outcome=result.outcome,
                exit_code=result.exit_code,
                elapsed_seconds=result.elapsed_seconds,
                reason=result.reason,
            )
        )
        if result.outcome == StageOutcome.SUCCEEDED:
            self.reconcile_caches(stage.outputs)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(
        self,
        *,
        force: bool = False,
        service_timeout: float | None = None,
        fetch_options: FetchOptions | None = None,
        only: list[str] | None = None,
        serve: bool = True,
    ) -> RunReport:
        """Acquire -> transform -> load -> serve.  Never raises GeoforgeError.

        ``only`` limits the run to the named stages plus their upstream;
        ``serve=False`` stops after the stages.
        """
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        self._service_timeout = service_timeout
        planned: list[StageDefinition] = []
        status = RunStatus.SUCCEEDED
        failed_stage: str | None = None
        error: GeoforgeError | None = None

        try:
            with self.lock:
                fetch_options = fetch_options or FetchOptions.from_settings(self.config)
                if force:
                    fetch_options = fetch_options.model_copy(update={"force": True})
                self.fetch_sources(fetch_options)

                planner = PipelinePlanner(self.pipeline, self.executor)
                planned = planner.plan(only)
                stage_report = planner.execute(
                    planned,
                    force=force,
                    before_stage=self._before_stage,
                    after_stage=self._after_stage,
                    run_id=self.run_id,
                )
                if stage_report.failed_stage:
                    failed_stage = stage_report.failed_stage
                    self.cancel.raise_if_cancelled()
                    result = next(r for r in self._stages if r.stage_id == failed_stage)
                    error = ExternalToolFailure(
                        f"Stage {failed_stage} failed: {result.reason}",
                        stage_id=failed_stage,
                        exit_code=result.exit_code,
                        tail=result.tail,
                    )
                    status = RunStatus.FAILED
                elif serve:
                    not_ready: list[GateResult] = []
                    for service in self._services_in_scope(only):
                        if service.name in self._ready:
                            continue
                        result_gate = self.await_service(service)
                        if not result_gate.ready:
                            not_ready.append(result_gate)
                    self.reconcile_caches()
                    if not_ready:
                        status, error = _gate_failure(not_ready)
                else:
                    self.reconcile_caches()
        except GeoforgeError as exc:
            status = RunStatus.FAILED
            error = exc
            logger.error("Run %s failed: %s", self.run_id, exc)

        report = self._build_report(
            planned, status, failed_stage, error, started_at, time.monotonic() - started
        )
        self.ledger.record_report(report)
        return report

    def _build_report(
        self,
        planned: list[StageDefinition],
        status: RunStatus,
        failed_stage: str | None,
        error: GeoforgeError | None,
        started_at: datetime,
        elapsed: float,
    ) -> RunReport:
        stages = list(self._stages)
        seen = {r.stage_id for r in stages}
        blocker = failed_stage or (error.kind if error else "")
        for stage in planned:
            if stage.stage_id not in seen:
                stages.append(
                    StageResult(
                        stage_id=stage.stage_id,
                        outcome=StageOutcome.NOT_ATTEMPTED,
                        reason=f"halted by {blocker}",
                    )
                )
        kind = error.kind if error else None
        return RunReport(
            run_id=self.run_id,
            pipeline=self.pipeline.name,
            status=status,
            fetches=list(self._fetches),
            stages=stages,
            gates=list(self._gates),
            caches=list(self._caches),
            failed_stage=failed_stage,
            error_kind=kind,
            error_message=str(error) if error else "",
            exit_code=int(exit_code_for(kind)),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            elapsed_seconds=elapsed,
        )
