"""Readiness Gate — start services only on valid inputs, then wait for ready.

The gate never invokes a probe (or the start command) before every
prerequisite artifact is valid.  Probe exceptions count as not-ready and
are retried until the timeout.  On timeout the service is left running so
the caller can inspect logs or decide to continue.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable
from typing import Protocol

import requests

from geoforge.core.artifacts import ArtifactInspector
from geoforge.core.cancellation import CancellationToken
from geoforge.errors import CancelledError
from geoforge.models.pipeline import PipelineDefinition
from geoforge.models.reports import GateResult, GateStatus
from geoforge.models.services import ProbeKind, ProbeSpec, ServiceDefinition

logger = logging.getLogger(__name__)


class Probe(Protocol):
    """Answers "is the service ready?" with a reason when it is not."""

    def check(self) -> tuple[bool, str]: ...


class HttpProbe:
    """GET a health endpoint and compare the status code."""

    def __init__(self, spec: ProbeSpec, session: requests.Session) -> None:
        self._spec = spec
        self._session = session

    def check(self) -> tuple[bool, str]:
        response = self._session.get(self._spec.url, timeout=self._spec.timeout_seconds)
        with response:
            if response.status_code == self._spec.expected_status:
                return True, ""
            return False, f"HTTP {response.status_code} from {self._spec.url}"


class CommandProbe:
    """Run a command; exit status 0 means ready."""

    def __init__(self, argv: list[str], timeout: float) -> None:
        self._argv = argv
        self._timeout = timeout

    def check(self) -> tuple[bool, str]:
        proc = subprocess.run(
            self._argv,
            capture_output=True,
            text=True,
            timeout=self._timeout,
        )
        if proc.returncode == 0:
            return True, ""
        detail = (proc.stderr or proc.stdout).strip().splitlines()
        suffix = f": {detail[-1]}" if detail else ""
        return False, f"{self._argv[0]} exited with status {proc.returncode}{suffix}"


class ReadinessGate:
    """Gates long-running services of one pipeline.

    Parameters
    ----------
    pipeline:
        Source of artifact specs and placeholder values.
    inspector:
        Validates prerequisite artifacts.
    session:
        HTTP session for ``http`` probes.  Created if omitted.
    cancel:
        Process-wide cancellation token.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        inspector: ArtifactInspector,
        *,
        session: requests.Session | None = None,
        cancel: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pipeline = pipeline
        self._inspector = inspector
        self._session = session or requests.Session()
        self._cancel = cancel or CancellationToken()
        self._clock = clock

    def make_probe(self, spec: ProbeSpec) -> Probe:
        if spec.kind == ProbeKind.HTTP:
            return HttpProbe(spec, self._session)
        return CommandProbe(self._pipeline.resolve_command(spec.command), spec.timeout_seconds)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def missing_prerequisites(self, service: ServiceDefinition) -> list[str]:
        """Names of prerequisite artifacts that are not valid."""
        return [
            name
            for name in service.prerequisites
            if not self._inspector.is_valid(self._pipeline.artifact(name))
        ]

    def await_ready(
        self,
        service: ServiceDefinition,
        timeout: float | None = None,
        *,
        probe: Probe | None = None,
    ) -> GateResult:
        """Verify prerequisites, start the service, poll until ready or timeout."""
        started = self._clock()
        timeout = timeout if timeout is not None else service.ready_timeout_seconds

        missing = self.missing_prerequisites(service)
        if missing:
            reasons = [
                f"{name}: {self._inspector.status(self._pipeline.artifact(name)).reason}"
                for name in missing
            ]
            logger.error(
                "Refusing to start %s; prerequisites invalid: %s", service.name, "; ".join(reasons)
            )
            return GateResult(
                service=service.name,
                status=GateStatus.PREREQUISITES_MISSING,
                last_reason="; ".join(reasons),
                missing_prerequisites=missing,
            )

        probe = probe or self.make_probe(service.probe)
        if service.start_command and not self._already_ready(service, probe):
            error = self._start(service)
            if error:
                return GateResult(
                    service=service.name,
                    status=GateStatus.PROBE_ERROR,
                    elapsed_seconds=self._clock() - started,
                    last_reason=error,
                )

        deadline = started + timeout
        probes = 0
        last_reason = ""
        logger.info("Waiting up to %.0fs for %s to become ready", timeout, service.name)

        while True:
            probes += 1
            try:
                ready, reason = probe.check()
            except Exception as exc:  # any probe failure is "not ready yet"
                ready, reason = False, f"{type(exc).__name__}: {exc}"
            if ready:
                elapsed = self._clock() - started
                logger.info("%s ready after %.1fs (%d probes)", service.name, elapsed, probes)
                return GateResult(
                    service=service.name,
                    status=GateStatus.READY,
                    elapsed_seconds=elapsed,
                    probes=probes,
                )
            last_reason = reason
            logger.debug("%s not ready: %s", service.name, reason)

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            if self._cancel.sleep(min(service.poll_interval_seconds, remaining)):
                raise CancelledError(self._cancel.reason or "cancelled")

        elapsed = self._clock() - started
        logger.error(
            "%s not ready after %.1fs (%d probes); last failure: %s. Service left running.",
            service.name, elapsed, probes, last_reason,
        )
        return GateResult(
            service=service.name,
            status=GateStatus.TIMED_OUT,
            elapsed_seconds=elapsed,
            probes=probes,
            last_reason=last_reason,
        )

    @staticmethod
    def _already_ready(service: ServiceDefinition, probe: Probe) -> bool:
        """One probe before starting, so a re-run does not start a second copy."""
        try:
            ready, _ = probe.check()
        except Exception:
            return False
        if ready:
            logger.info("%s already running; not starting it again", service.name)
        return ready

    def _start(self, service: ServiceDefinition) -> str:
        """Run the start command; return an error description or ''."""
        argv = self._pipeline.resolve_command(service.start_command)
        logger.info("Starting %s: %s", service.name, " ".join(argv))
        try:
            proc = subprocess.run(argv, capture_output=True, text=True)
        except FileNotFoundError:
            return f"start command not found: {argv[0]}"
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout).strip().splitlines()
            suffix = f": {detail[-1]}" if detail else ""
            return f"start command exited with status {proc.returncode}{suffix}"
        return ""
