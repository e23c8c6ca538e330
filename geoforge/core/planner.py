"""Pipeline Planner — orders stages and executes them fail-fast.

``plan()`` computes the topological order once and runs a preflight that
every stage's executable and placeholders resolve, so configuration errors
surface before any external command runs.  ``execute()`` runs stages
strictly in order; the first FAILED stage stops the run and every stage
after it is reported NOT_ATTEMPTED.  Because satisfied stages are skipped,
re-running after a failure resumes at the first unsatisfied stage.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from geoforge.core.executor import StageExecutor
from geoforge.core.pipeline_graph import PipelineGraph
from geoforge.errors import ConfigurationError
from geoforge.models.pipeline import PipelineDefinition
from geoforge.models.reports import RunReport, RunStatus
from geoforge.models.stages import StageDefinition, StageOutcome, StageResult

logger = logging.getLogger(__name__)

#: Called before a stage runs; may raise to halt the pipeline.
BeforeStageHook = Callable[[StageDefinition], None]
#: Called after every stage with its result.
AfterStageHook = Callable[[StageDefinition, StageResult], None]


class StagePlan(BaseModel):
    """Dry-run view of one planned stage."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    label: str
    will_run: bool
    reasons: list[str] = []
    upstream: list[str] = []


class PipelinePlanner:
    """Orders and runs the stages of one pipeline.

    Parameters
    ----------
    pipeline:
        The static pipeline definition.
    executor:
        Runs individual stages.
    """

    def __init__(self, pipeline: PipelineDefinition, executor: StageExecutor) -> None:
        self._pipeline = pipeline
        self._executor = executor
        # Cycles are rejected here, at plan time.
        self.graph = PipelineGraph(pipeline.stages)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, only: list[str] | None = None) -> list[StageDefinition]:
        """Return stages in dependency order, after preflight checks.

        ``only`` restricts the plan to the named stages and their upstream
        closure.
        """
        if only:
            unknown = [sid for sid in only if sid not in self.graph.stage_ids]
            if unknown:
                raise ConfigurationError(f"Unknown stage(s): {', '.join(unknown)}")
            stage_ids = self.graph.closure(only)
        else:
            stage_ids = self.graph.stage_ids
        stages = [self.graph.get_stage_definition(sid) for sid in stage_ids]
        self.preflight(stages)
        return stages

    def preflight(self, stages: list[StageDefinition]) -> None:
        """Every command resolves and its executable exists."""
        missing: list[str] = []
        for stage in stages:
            argv = self._pipeline.resolve_command(stage.command)
            exe = argv[0]
            if Path(exe).is_absolute() or "/" in exe:
                cwd = stage.working_dir or Path.cwd()
                if not (cwd / exe).exists():
                    missing.append(f"{stage.stage_id}: {exe}")
            elif shutil.which(exe) is None:
                missing.append(f"{stage.stage_id}: {exe}")
        if missing:
            raise ConfigurationError(f"Missing command(s): {'; '.join(missing)}")

    def describe(self, stages: list[StageDefinition], force: bool = False) -> list[StagePlan]:
        """What ``execute`` would do, assuming every stage succeeds."""
        plans: list[StagePlan] = []
        will_run_ids: set[str] = set()
        for stage in stages:
            upstream = self.graph.get_upstream(stage.stage_id)
            reasons = self._executor.unsatisfied_reasons(stage)
            rerun_upstream = [u for u in upstream if u in will_run_ids]
            if rerun_upstream:
                reasons = [*reasons, f"upstream will run: {', '.join(rerun_upstream)}"]
            if force:
                reasons = ["forced", *reasons]
            will_run = bool(reasons)
            if will_run:
                will_run_ids.add(stage.stage_id)
            plans.append(
                StagePlan(
                    stage_id=stage.stage_id,
                    label=stage.label,
                    will_run=will_run,
                    reasons=reasons,
                    upstream=upstream,
                )
            )
        return plans

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        stages: list[StageDefinition],
        *,
        force: bool = False,
        before_stage: BeforeStageHook | None = None,
        after_stage: AfterStageHook | None = None,
        run_id: str = "",
    ) -> RunReport:
        """Run ``stages`` sequentially, stopping at the first failure.

        Returns a RunReport covering the stages only; the orchestrator
        adds fetches, gates, and cache reconciles to it.
        """
        started = time.monotonic()
        results: list[StageResult] = []
        failed: str | None = None
        failure_reason = ""

        for index, stage in enumerate(stages):
            if (
                before_stage is not None
                and stage.requires_services
                and (force or not self._executor.is_satisfied(stage))
            ):
                before_stage(stage)

            logger.info("[%d/%d] %s", index + 1, len(stages), stage.label)
            result = self._executor.run(stage, force=force)
            results.append(result)
            if after_stage is not None:
                after_stage(stage, result)

            if not result.ok:
                failed = stage.stage_id
                failure_reason = result.reason
                for later in stages[index + 1:]:
                    results.append(
                        StageResult(
                            stage_id=later.stage_id,
                            outcome=StageOutcome.NOT_ATTEMPTED,
                            reason=f"{stage.stage_id} failed",
                        )
                    )
                break

        return RunReport(
            run_id=run_id,
            pipeline=self._pipeline.name,
            status=RunStatus.FAILED if failed else RunStatus.SUCCEEDED,
            stages=results,
            failed_stage=failed,
            error_kind="stage_failed" if failed else None,
            error_message=failure_reason,
            elapsed_seconds=time.monotonic() - started,
        )
