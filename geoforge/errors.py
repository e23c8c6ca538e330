"""Error taxonomy for geoforge runs.

Every error names the artifact, stage, or service it concerns so that a
re-run is informed rather than blind.  Only ``TransientIOError`` is retried
(inside the Fetcher); everything else propagates to the Orchestrator, which
halts the pipeline and turns the error into the RunReport.
"""

from __future__ import annotations


class GeoforgeError(RuntimeError):
    """Root of all geoforge errors."""

    #: Short machine-readable kind recorded in the RunReport.
    kind: str = "error"


class ConfigurationError(GeoforgeError):
    """Fatal at plan time: bad pipeline definition or missing command."""

    kind = "configuration_error"


class CyclicDependencyError(ConfigurationError):
    """Raised when stage inputs/outputs form a cycle."""


class FetchError(GeoforgeError):
    """A source artifact could not be acquired."""

    kind = "fetch_failed"

    def __init__(self, message: str, *, url: str = "", artifact: str = "") -> None:
        super().__init__(message)
        self.url = url
        self.artifact = artifact


class TransientIOError(FetchError):
    """Retryable network failure: connection reset, timeout, 5xx."""

    kind = "transient_io"


class CorruptArtifactError(FetchError):
    """Size or hash mismatch after transfer.  Not retried without an operator."""

    kind = "corrupt_artifact"


class DiskFullError(FetchError):
    """No space left for the destination.  Fatal, propagated immediately."""

    kind = "disk_full"


class ExternalToolFailure(GeoforgeError):
    """An external transformation tool exited non-zero or broke its contract."""

    kind = "stage_failed"

    def __init__(
        self,
        message: str,
        *,
        stage_id: str,
        exit_code: int | None = None,
        tail: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.stage_id = stage_id
        self.exit_code = exit_code
        self.tail = tail or []


class PrerequisitesMissingError(GeoforgeError):
    """A service was asked to start while its prerequisite artifacts are invalid."""

    kind = "prerequisites_missing"

    def __init__(self, message: str, *, service: str, missing: list[str]) -> None:
        super().__init__(message)
        self.service = service
        self.missing = missing


class ReadinessTimeoutError(GeoforgeError):
    """A service did not report ready before its timeout elapsed."""

    kind = "readiness_timeout"

    def __init__(
        self, message: str, *, service: str, elapsed: float, last_reason: str
    ) -> None:
        super().__init__(message)
        self.service = service
        self.elapsed = elapsed
        self.last_reason = last_reason


class ProbeError(GeoforgeError):
    """A service could not be started or its probe is unusable."""

    kind = "probe_error"

    def __init__(self, message: str, *, service: str) -> None:
        super().__init__(message)
        self.service = service


class CacheInvalidationError(GeoforgeError):
    """A cache domain could not be cleared; it was left untouched."""

    kind = "cache_invalidation_failed"

    def __init__(self, message: str, *, domain: str) -> None:
        super().__init__(message)
        self.domain = domain


class LockHeldError(GeoforgeError):
    """Another orchestrator run holds the data directory lock."""

    kind = "lock_held"

    def __init__(self, message: str, *, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class CancelledError(GeoforgeError):
    """The process-wide cancellation signal was delivered."""

    kind = "cancelled"
