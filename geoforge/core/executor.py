"""Stage Executor — runs one external transformation step.

Lifecycle of ``run(stage)``:
1. Satisfied (outputs valid and fresh) and not forced -> SKIPPED, the
   command is never invoked.
2. Inputs must be valid; a stage never starts on an invalid input.
3. The command runs with output streamed line by line; only a bounded
   tail is kept for diagnostics.
4. Non-zero exit, timeout, or cancellation -> FAILED; any outputs that
   exist are downgraded to unknown validity, not deleted.
5. Exit 0 -> stamps written, every output re-validated; an invalid output
   after exit 0 is a contract violation and FAILS the stage.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

from geoforge.config import GeoforgeSettings, settings as default_settings
from geoforge.core.artifacts import ArtifactInspector
from geoforge.core.cancellation import CancellationToken
from geoforge.errors import ConfigurationError
from geoforge.models.artifacts import ArtifactSpec
from geoforge.models.pipeline import PipelineDefinition
from geoforge.models.stages import StageDefinition, StageOutcome, StageResult

logger = logging.getLogger(__name__)

LineCallback = Callable[[str, str], None]  # (stage_id, line)

_POLL_SECONDS = 0.2


class StageExecutor:
    """Runs stages of one pipeline against its data directory.

    Parameters
    ----------
    pipeline:
        Source of artifact specs and placeholder values.
    inspector:
        Validates artifacts and records unknown-validity taints.
    cancel:
        Process-wide cancellation token.
    on_line:
        Receives every output line of the external tool.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        inspector: ArtifactInspector,
        *,
        cancel: CancellationToken | None = None,
        on_line: LineCallback | None = None,
        config: GeoforgeSettings | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._inspector = inspector
        self._cancel = cancel or CancellationToken()
        self._on_line = on_line
        self._config = config or default_settings

    # ------------------------------------------------------------------
    # Satisfaction
    # ------------------------------------------------------------------

    def _specs(self, names: list[str]) -> list[ArtifactSpec]:
        return [self._pipeline.artifact(name) for name in names]

    def unsatisfied_reasons(self, stage: StageDefinition) -> list[str]:
        """Why a stage would run; empty when it is satisfied."""
        outputs = self._specs(stage.outputs)
        if not outputs:
            return ["stage declares no outputs"]
        reasons = [
            f"{status.name}: {status.reason}"
            for status in (self._inspector.status(spec) for spec in outputs)
            if not status.valid
        ]
        if not reasons:
            inputs = self._specs(stage.inputs)
            if not self._inspector.is_fresh(outputs, inputs):
                reasons.append("outputs older than inputs")
        return reasons

    def is_satisfied(self, stage: StageDefinition) -> bool:
        return not self.unsatisfied_reasons(stage)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, stage: StageDefinition, force: bool = False) -> StageResult:
        """Run ``stage`` unless it is already satisfied."""
        if not force:
            reasons = self.unsatisfied_reasons(stage)
            if not reasons:
                logger.info("Stage %s satisfied, skipping", stage.stage_id)
                return StageResult(
                    stage_id=stage.stage_id,
                    outcome=StageOutcome.SKIPPED,
                    reason="outputs valid and fresh",
                )
            logger.info("Stage %s must run: %s", stage.stage_id, "; ".join(reasons))

        bad_inputs = [
            f"{s.name}: {s.reason}"
            for s in (self._inspector.status(spec) for spec in self._specs(stage.inputs))
            if not s.valid
        ]
        if bad_inputs:
            return StageResult(
                stage_id=stage.stage_id,
                outcome=StageOutcome.FAILED,
                reason=f"invalid inputs: {'; '.join(bad_inputs)}",
            )

        argv = self._pipeline.resolve_command(stage.command)
        started = time.monotonic()
        exit_code, tail, interrupted = self._spawn(stage, argv)
        elapsed = time.monotonic() - started

        outputs = self._specs(stage.outputs)
        if exit_code != 0 or interrupted:
            reason = interrupted or f"{argv[0]} exited with status {exit_code}"
            self._taint_existing(stage, outputs, reason)
            logger.error("Stage %s failed after %.1fs: %s", stage.stage_id, elapsed, reason)
            return StageResult(
                stage_id=stage.stage_id,
                outcome=StageOutcome.FAILED,
                exit_code=exit_code,
                elapsed_seconds=elapsed,
                reason=reason,
                tail=tail,
            )

        for spec in outputs:
            if spec.stamp:
                self._inspector.write_stamp(spec, f"{stage.stage_id}\n")
            self._inspector.clear_taint(spec)

        invalid = [s for s in (self._inspector.status(spec) for spec in outputs) if not s.valid]
        if not invalid and not self._inspector.is_fresh(outputs, self._specs(stage.inputs)):
            invalid = [
                s.model_copy(update={"valid": False, "reason": "not rewritten"})
                for s in (self._inspector.status(spec) for spec in outputs)
            ]
        if invalid:
            reason = "exited 0 without valid outputs: " + "; ".join(
                f"{s.name} ({s.reason})" for s in invalid
            )
            self._taint_existing(stage, [self._pipeline.artifact(s.name) for s in invalid], reason)
            logger.error("Stage %s broke its output contract: %s", stage.stage_id, reason)
            return StageResult(
                stage_id=stage.stage_id,
                outcome=StageOutcome.FAILED,
                exit_code=exit_code,
                elapsed_seconds=elapsed,
                reason=reason,
                tail=tail,
                invalid_outputs=[s.name for s in invalid],
            )

        logger.info("Stage %s succeeded in %.1fs", stage.stage_id, elapsed)
        return StageResult(
            stage_id=stage.stage_id,
            outcome=StageOutcome.SUCCEEDED,
            exit_code=exit_code,
            elapsed_seconds=elapsed,
        )

    def _taint_existing(
        self, stage: StageDefinition, outputs: list[ArtifactSpec], reason: str
    ) -> None:
        for spec in outputs:
            if Path(spec.path).exists():
                self._inspector.taint(spec, stage.stage_id, reason)

    # ------------------------------------------------------------------
    # Subprocess
    # ------------------------------------------------------------------

    def _spawn(
        self, stage: StageDefinition, argv: list[str]
    ) -> tuple[int | None, list[str], str]:
        """Run argv; return (exit_code, tail, interruption reason or '')."""
        env = {**os.environ, **stage.env} if stage.env else None
        tail: deque[str] = deque(maxlen=self._config.diagnostic_tail_lines)
        logger.info("Running %s: %s", stage.stage_id, " ".join(argv))

        try:
            proc = subprocess.Popen(
                argv,
                cwd=stage.working_dir,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(
                f"Stage {stage.stage_id}: command not found: {argv[0]}"
            ) from exc

        reader = threading.Thread(
            target=self._pump, args=(stage.stage_id, proc, tail), daemon=True
        )
        reader.start()

        deadline = (
            time.monotonic() + stage.timeout_seconds if stage.timeout_seconds else None
        )
        interrupted = ""
        while proc.poll() is None:
            if self._cancel.cancelled:
                interrupted = f"cancelled ({self._cancel.reason})"
            elif deadline is not None and time.monotonic() > deadline:
                interrupted = f"timed out after {stage.timeout_seconds:g}s"
            if interrupted:
                self._terminate(proc)
                break
            self._cancel.sleep(_POLL_SECONDS)

        grace = self._config.stage_kill_grace_seconds
        reader.join(timeout=grace)
        if reader.is_alive():
            # a helper the tool forked still holds the output pipe
            logger.warning(
                "Stage %s left processes behind in group %d, killing them", stage.stage_id, proc.pid
            )
            self._signal_group(proc, signal.SIGKILL)
            reader.join(timeout=grace)
        return proc.returncode, list(tail), interrupted

    def _pump(
        self, stage_id: str, proc: subprocess.Popen, tail: deque[str]
    ) -> None:
        assert proc.stdout is not None
        with proc.stdout:
            for raw in proc.stdout:
                line = raw.rstrip("\n")
                tail.append(line)
                logger.debug("[%s] %s", stage_id, line)
                if self._on_line is not None:
                    self._on_line(stage_id, line)

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: signal.Signals) -> None:
        """Signal the tool and everything it forked (its own session)."""
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass  # whole group already gone

    def _terminate(self, proc: subprocess.Popen) -> None:
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self._config.stage_kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Process %d ignored SIGTERM, killing", proc.pid)
            self._signal_group(proc, signal.SIGKILL)
            proc.wait()
