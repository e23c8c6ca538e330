"""Derived cache domain model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict

# Marker holding the upstream mtime (ns) the domain was last cleared for.
TIMESTAMP_MARKER = ".upstream-timestamp"


class CacheDomain(BaseModel):
    """A disposable cache directory tied to upstream artifacts.

    When any tied artifact's timestamp advances past the recorded marker
    the domain is stale and must be cleared before it is served again.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    upstream: list[str] = []  # artifact names

    @property
    def marker_path(self) -> Path:
        return self.path / TIMESTAMP_MARKER


class CacheStats(BaseModel):
    """Size of a cache domain at one moment."""

    model_config = ConfigDict(frozen=True)

    domain: str
    path: Path
    files: int = 0
    size_bytes: int = 0
    upstream_timestamp_ns: int | None = None  # marker value, None if never reconciled
