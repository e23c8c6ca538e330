"""Build ledger entry models.

The build ledger is the persistent memory of a data directory: which
stages ran with what outcome, which artifacts were left in unknown
validity, and the final report of every run.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from geoforge.models.stages import StageOutcome


class StageEvent(BaseModel):
    """One stage outcome recorded during a run."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    stage_id: str
    outcome: StageOutcome
    exit_code: int | None = None
    elapsed_seconds: float = 0.0
    reason: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class TaintRecord(BaseModel):
    """An artifact downgraded to unknown validity by a failed stage."""

    model_config = ConfigDict(frozen=True)

    path: str
    stage_id: str
    reason: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
