"""Stage models — one external transformation step with declared inputs/outputs."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class DurationClass(str, Enum):
    """Rough expected duration, used only for reporting."""

    SHORT = "short"  # seconds
    MEDIUM = "medium"  # a few minutes
    LONG = "long"  # 5-15 minutes
    VERY_LONG = "very_long"  # 30+ minutes


class StageOutcome(str, Enum):
    """What happened to a stage in a run."""

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"  # downstream of a failure


class StageDefinition(BaseModel):
    """A named unit of work.

    ``command`` is an argv template.  ``{name}`` placeholders are resolved
    against artifact paths (by artifact name) and pipeline variables.
    Dependency edges are implied: a stage depends on whichever stage
    produces one of its inputs.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str = ""
    command: list[str]
    inputs: list[str] = []  # artifact names
    outputs: list[str] = []  # artifact names
    working_dir: Path | None = None
    env: dict[str, str] = {}
    duration_class: DurationClass = DurationClass.MEDIUM
    timeout_seconds: float | None = None
    requires_services: list[str] = []  # services that must be Ready first

    @property
    def label(self) -> str:
        return self.display_name or self.stage_id


class StageResult(BaseModel):
    """Outcome of a single ``StageExecutor.run`` call."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    outcome: StageOutcome
    exit_code: int | None = None
    elapsed_seconds: float = 0.0
    reason: str = ""
    tail: list[str] = Field(default_factory=list)  # last lines of tool output
    invalid_outputs: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome in (StageOutcome.SKIPPED, StageOutcome.SUCCEEDED)
