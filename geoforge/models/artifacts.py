"""Artifact models — named, validity-checked files in the data directory."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator


class ArtifactSpec(BaseModel):
    """A named file the pipeline produces or consumes.

    An artifact is valid iff it exists, exceeds ``min_size_bytes``, matches
    ``sha256`` when one is declared, and has not been downgraded to unknown
    validity by a failed stage.  Stamp artifacts are zero-byte markers
    written by the executor for stages whose real output lives elsewhere
    (for example a database import); for them only existence counts.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    min_size_bytes: int = 1
    sha256: str | None = None  # "sha256:<hex>" or bare hex
    stamp: bool = False
    description: str = ""

    @field_validator("sha256")
    @classmethod
    def _normalise_digest(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        return value.removeprefix("sha256:").lower()

    @property
    def temp_path(self) -> Path:
        """Download staging path; never visible as the artifact itself."""
        return self.path.with_name(self.path.name + ".part")


class ArtifactStatus(BaseModel):
    """The result of validating one artifact at one moment."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    valid: bool
    exists: bool = False
    size_bytes: int = 0
    mtime_ns: int = 0
    reason: str = ""  # why the artifact is invalid, empty when valid
