"""Artifact Fetcher — resumable, verified downloads of large source files.

Guarantees:
- Bytes land in ``<dest>.part`` and are renamed onto the destination only
  after the transfer completes and the size/hash checks pass.  No partially
  written artifact is ever visible to later stages.
- A ``.part`` file left behind (crash, ``keep_partial_on_failure``) is
  resumed with an HTTP Range request, conditional on the upstream
  validator (ETag or Last-Modified) recorded when it was started; a
  changed upstream or a server that ignores ranges degrades to a full
  restart.
- Transient network errors are retried with exponential backoff; size or
  hash mismatches and disk exhaustion are not.
- On failure the previous valid artifact, if any, is left untouched.
"""

from __future__ import annotations

import errno
import logging
import os
import re
import shutil
import time
from collections.abc import Callable, Mapping
from pathlib import Path

import requests
from pydantic import BaseModel, ConfigDict

from geoforge.config import GeoforgeSettings, settings as default_settings
from geoforge.core.artifacts import ArtifactInspector
from geoforge.core.cancellation import CancellationToken
from geoforge.errors import (
    CancelledError,
    CorruptArtifactError,
    DiskFullError,
    FetchError,
    TransientIOError,
)
from geoforge.models.artifacts import ArtifactSpec
from geoforge.models.reports import FetchReport

logger = logging.getLogger(__name__)

USER_AGENT = "geoforge-fetcher/0.1"

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")
_UNSATISFIED_RANGE = re.compile(r"bytes\s+\*/(\d+)")

_TRANSIENT_REQUEST_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


class FetchOptions(BaseModel):
    """Per-fetch knobs.  Defaults come from ``GeoforgeSettings``."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = 5
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    connect_timeout_seconds: float = 15.0
    stall_timeout_seconds: float = 60.0
    progress_interval_seconds: float = 1.0
    chunk_size: int = 1024 * 1024
    keep_partial_on_failure: bool = False
    force: bool = False
    min_free_bytes: int = 0  # headroom required beyond the remaining bytes

    @classmethod
    def from_settings(cls, cfg: GeoforgeSettings, **overrides: object) -> "FetchOptions":
        values: dict[str, object] = {
            "max_retries": cfg.fetch_max_retries,
            "backoff_base_seconds": cfg.fetch_backoff_base,
            "backoff_max_seconds": cfg.fetch_backoff_max,
            "connect_timeout_seconds": cfg.fetch_connect_timeout,
            "stall_timeout_seconds": cfg.fetch_stall_timeout,
            "progress_interval_seconds": cfg.progress_interval,
            "chunk_size": cfg.fetch_chunk_size,
        }
        values.update(overrides)
        return cls(**values)


class FetchProgress(BaseModel):
    """A throttled progress sample.

    ``transferred`` counts network bytes received during this fetch and
    never decreases; ``position`` is the offset within the file and may go
    back to zero when a server forces a restart.
    """

    model_config = ConfigDict(frozen=True)

    artifact: str
    transferred: int
    position: int
    total: int | None
    rate_bytes_per_second: float
    done: bool = False


ProgressCallback = Callable[[FetchProgress], None]


class _ProgressTracker:
    """Emits at most one sample per interval, independent of chunk size."""

    def __init__(
        self,
        artifact: str,
        interval: float,
        callback: ProgressCallback | None,
        clock: Callable[[], float],
    ) -> None:
        self._artifact = artifact
        self._interval = interval
        self._callback = callback
        self._clock = clock
        self.transferred = 0
        self.position = 0
        self.total: int | None = None
        self._last_emit = clock()
        self._last_transferred = 0

    def begin(self, position: int, total: int | None) -> None:
        self.position = position
        self.total = total

    def advance(self, nbytes: int) -> None:
        self.transferred += nbytes
        self.position += nbytes
        if self._clock() - self._last_emit >= self._interval:
            self._emit()

    def finish(self) -> None:
        self._emit(done=True)

    def _emit(self, done: bool = False) -> None:
        now = self._clock()
        elapsed = now - self._last_emit
        rate = (self.transferred - self._last_transferred) / elapsed if elapsed > 0 else 0.0
        self._last_emit = now
        self._last_transferred = self.transferred
        if self._callback is None:
            return
        self._callback(
            FetchProgress(
                artifact=self._artifact,
                transferred=self.transferred,
                position=self.position,
                total=self.total,
                rate_bytes_per_second=rate,
                done=done,
            )
        )


class Fetcher:
    """Downloads source artifacts over HTTP(S).

    Parameters
    ----------
    inspector:
        Used to decide whether the destination is already valid and to
        verify digests.
    session:
        A ``requests.Session`` (or compatible object).  Created if omitted.
    cancel:
        Process-wide cancellation token.
    on_progress:
        Receives throttled ``FetchProgress`` samples.
    """

    def __init__(
        self,
        inspector: ArtifactInspector,
        *,
        session: requests.Session | None = None,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inspector = inspector
        self._cancel = cancel or CancellationToken()
        self._on_progress = on_progress
        self._clock = clock
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = USER_AGENT
        self._session = session

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        url: str,
        artifact: ArtifactSpec,
        options: FetchOptions | None = None,
    ) -> FetchReport:
        """Acquire ``url`` into ``artifact``.

        Returns a FetchReport; raises a ``FetchError`` subclass on failure.
        """
        options = options or FetchOptions.from_settings(default_settings)
        started = self._clock()

        if not options.force and self._inspector.is_valid(artifact):
            logger.info("Source %s already valid at %s, skipping download", artifact.name, artifact.path)
            size = Path(artifact.path).stat().st_size
            return FetchReport(artifact=artifact.name, url=url, skipped=True, size_bytes=size)

        tmp = artifact.temp_path
        tmp.parent.mkdir(parents=True, exist_ok=True)
        resumed_from = tmp.stat().st_size if tmp.exists() else 0
        tracker = _ProgressTracker(
            artifact.name, options.progress_interval_seconds, self._on_progress, self._clock
        )
        attempts = 0

        logger.info("Fetching %s -> %s", url, artifact.path)
        try:
            while True:
                attempts += 1
                self._cancel.raise_if_cancelled()
                try:
                    self._transfer(url, artifact, tmp, options, tracker)
                    break
                except TransientIOError as exc:
                    if attempts > options.max_retries:
                        raise FetchError(
                            f"Giving up on {url} after {attempts} attempts: {exc}",
                            url=url,
                            artifact=artifact.name,
                        ) from exc
                    delay = min(
                        options.backoff_base_seconds * 2 ** (attempts - 1),
                        options.backoff_max_seconds,
                    )
                    logger.warning(
                        "Transient error fetching %s (attempt %d/%d): %s; retrying in %.1fs",
                        url, attempts, options.max_retries + 1, exc, delay,
                    )
                    if self._cancel.sleep(delay):
                        raise CancelledError(self._cancel.reason or "cancelled") from exc

            self._verify(url, artifact, tmp)
            os.replace(tmp, artifact.path)
            _validator_path(tmp).unlink(missing_ok=True)
            self._inspector.clear_taint(artifact)
        except BaseException as exc:
            self._discard_partial(tmp, exc, options)
            raise

        tracker.finish()
        size = Path(artifact.path).stat().st_size
        elapsed = self._clock() - started
        logger.info(
            "Fetched %s (%d bytes, %d attempt(s), %.1fs)", artifact.name, size, attempts, elapsed
        )
        return FetchReport(
            artifact=artifact.name,
            url=url,
            resumed_from=resumed_from,
            bytes_transferred=tracker.transferred,
            size_bytes=size,
            attempts=attempts,
            elapsed_seconds=elapsed,
        )

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def _transfer(
        self,
        url: str,
        artifact: ArtifactSpec,
        tmp: Path,
        options: FetchOptions,
        tracker: _ProgressTracker,
    ) -> None:
        """One attempt: request, pick append vs restart, stream to ``tmp``."""
        offset = tmp.stat().st_size if tmp.exists() else 0
        headers: dict[str, str] = {}
        validator = _read_validator(tmp) if offset else None
        if offset:
            headers["Range"] = f"bytes={offset}-"
            if validator:
                # a changed upstream answers 200 with the whole new file
                headers["If-Range"] = validator

        try:
            response = self._session.get(
                url,
                stream=True,
                headers=headers,
                timeout=(options.connect_timeout_seconds, options.stall_timeout_seconds),
            )
        except _TRANSIENT_REQUEST_ERRORS as exc:
            raise TransientIOError(str(exc), url=url, artifact=artifact.name) from exc

        with response:
            status = response.status_code

            if status == 416:
                match = _UNSATISFIED_RANGE.match(response.headers.get("Content-Range", ""))
                if match and int(match.group(1)) == offset:
                    logger.info("Partial file for %s is already complete", artifact.name)
                    tracker.begin(offset, offset)
                    return
                _remove_partial(tmp)
                raise TransientIOError(
                    f"Range {offset}- not satisfiable, restarting from zero",
                    url=url, artifact=artifact.name,
                )
            if status == 429 or status >= 500:
                raise TransientIOError(f"HTTP {status}", url=url, artifact=artifact.name)
            if status >= 400:
                raise FetchError(f"HTTP {status} for {url}", url=url, artifact=artifact.name)

            if status == 206:
                match = _CONTENT_RANGE.match(response.headers.get("Content-Range", ""))
                if match is None or int(match.group(1)) != offset:
                    _remove_partial(tmp)
                    raise TransientIOError(
                        "Server returned an unexpected range, restarting from zero",
                        url=url, artifact=artifact.name,
                    )
                total = None if match.group(3) == "*" else int(match.group(3))
                mode = "ab"
                logger.info("Resuming %s at byte %d", artifact.name, offset)
            else:
                if offset and validator:
                    logger.info(
                        "Upstream %s changed since the partial download; restarting from zero",
                        artifact.name,
                    )
                elif offset:
                    logger.info("Server ignored range request for %s; restarting from zero", artifact.name)
                offset = 0
                length = response.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() else None
                mode = "wb"
                _write_validator(tmp, response.headers)

            if total is not None:
                self._ensure_space(tmp.parent, total - offset + options.min_free_bytes, url, artifact)
            tracker.begin(offset, total)

            try:
                with tmp.open(mode) as fh:
                    for chunk in response.iter_content(chunk_size=options.chunk_size):
                        if self._cancel.cancelled:
                            raise CancelledError(self._cancel.reason or "cancelled")
                        if chunk:
                            fh.write(chunk)
                            tracker.advance(len(chunk))
            except _TRANSIENT_REQUEST_ERRORS as exc:
                raise TransientIOError(str(exc), url=url, artifact=artifact.name) from exc
            except OSError as exc:
                if exc.errno == errno.ENOSPC:
                    raise DiskFullError(
                        f"Disk full while writing {tmp}", url=url, artifact=artifact.name
                    ) from exc
                raise

        received = tmp.stat().st_size
        if total is not None and received < total:
            raise TransientIOError(
                f"Transfer ended early at {received}/{total} bytes",
                url=url, artifact=artifact.name,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _verify(self, url: str, artifact: ArtifactSpec, tmp: Path) -> None:
        size = tmp.stat().st_size
        if size < artifact.min_size_bytes:
            raise CorruptArtifactError(
                f"Downloaded {artifact.name} is {size} bytes, below minimum "
                f"{artifact.min_size_bytes}; discarded",
                url=url, artifact=artifact.name,
            )
        if artifact.sha256 and not self._inspector.check_digest(tmp, artifact.sha256):
            raise CorruptArtifactError(
                f"Downloaded {artifact.name} does not match sha256 {artifact.sha256}; discarded",
                url=url, artifact=artifact.name,
            )

    @staticmethod
    def _ensure_space(directory: Path, needed: int, url: str, artifact: ArtifactSpec) -> None:
        free = shutil.disk_usage(directory).free
        if free < needed:
            raise DiskFullError(
                f"Need {needed} bytes in {directory} for {artifact.name}, only {free} free",
                url=url, artifact=artifact.name,
            )

    @staticmethod
    def _discard_partial(tmp: Path, exc: BaseException, options: FetchOptions) -> None:
        corrupt = isinstance(exc, (CorruptArtifactError, DiskFullError))
        if options.keep_partial_on_failure and not corrupt:
            if tmp.exists():
                logger.info("Keeping partial download %s for resume", tmp)
            return
        if tmp.exists():
            logger.info("Removing partial download %s", tmp)
        _remove_partial(tmp)


# ---------------------------------------------------------------------------
# Partial-file validator
# ---------------------------------------------------------------------------


def _validator_path(tmp: Path) -> Path:
    return tmp.with_name(tmp.name + ".validator")


def _read_validator(tmp: Path) -> str | None:
    path = _validator_path(tmp)
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8").strip() or None


def _write_validator(tmp: Path, headers: Mapping[str, str]) -> None:
    """Remember which upstream version the bytes in ``tmp`` belong to.

    A strong ETag is preferred; weak ETags cannot be used with If-Range,
    so Last-Modified is the fallback. Without either, the stale marker is
    dropped and a later resume is unconditional.
    """
    etag = headers.get("ETag") or ""
    validator = etag if etag and not etag.startswith("W/") else headers.get("Last-Modified")
    path = _validator_path(tmp)
    if validator:
        path.write_text(validator, encoding="utf-8")
    else:
        path.unlink(missing_ok=True)


def _remove_partial(tmp: Path) -> None:
    tmp.unlink(missing_ok=True)
    _validator_path(tmp).unlink(missing_ok=True)
