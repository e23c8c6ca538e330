"""Artifact validation, unknown-validity taints, and atomic replacement.

An artifact is valid iff it exists, exceeds its minimum size, matches its
declared hash (if any), and is not tainted.  Taints live in the build
ledger so a failure in one run forces re-validation in the next.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from geoforge.core.hasher import DigestCache
from geoforge.core.run_ledger import BuildLedger
from geoforge.models.artifacts import ArtifactSpec, ArtifactStatus
from geoforge.models.ledger import TaintRecord

logger = logging.getLogger(__name__)


@contextmanager
def atomic_write_path(final: Path) -> Iterator[Path]:
    """Yield a sibling temp path; rename it onto ``final`` on clean exit.

    On any exception the temp file is removed and ``final`` is untouched.
    """
    final = Path(final)
    final.parent.mkdir(parents=True, exist_ok=True)
    tmp = final.with_name(f"{final.name}.tmp-{os.getpid()}")
    try:
        yield tmp
        os.replace(tmp, final)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class ArtifactInspector:
    """Validates artifacts against their specs.

    Parameters
    ----------
    ledger:
        Build ledger holding taints.  Without one, taints are kept in
        memory for the lifetime of the inspector.
    """

    def __init__(self, ledger: BuildLedger | None = None) -> None:
        self._ledger = ledger
        self._memory_taints: dict[str, TaintRecord] = {}
        self._digests = DigestCache()

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def status(self, spec: ArtifactSpec) -> ArtifactStatus:
        """Validate one artifact and explain the verdict."""
        path = Path(spec.path)
        try:
            st = path.stat()
        except FileNotFoundError:
            return ArtifactStatus(name=spec.name, path=path, valid=False, reason="missing")

        def _status(valid: bool, reason: str = "") -> ArtifactStatus:
            return ArtifactStatus(
                name=spec.name,
                path=path,
                valid=valid,
                exists=True,
                size_bytes=st.st_size,
                mtime_ns=st.st_mtime_ns,
                reason=reason,
            )

        taint = self.get_taint(spec)
        if taint is not None:
            return _status(False, f"unknown validity after {taint.stage_id} failed")

        if not spec.stamp and st.st_size < spec.min_size_bytes:
            return _status(
                False, f"size {st.st_size} below minimum {spec.min_size_bytes}"
            )

        if spec.sha256:
            actual = self._digests.digest(path)
            if actual != spec.sha256:
                return _status(False, f"sha256 mismatch (got {actual[:12]}...)")

        return _status(True)

    def is_valid(self, spec: ArtifactSpec) -> bool:
        return self.status(spec).valid

    def check_digest(self, path: Path, expected: str) -> bool:
        """Compare a file (not yet an artifact) against an expected digest."""
        return self._digests.digest(path) == expected

    @staticmethod
    def mtime_ns(spec: ArtifactSpec) -> int:
        """Production timestamp; 0 when the file does not exist."""
        try:
            return Path(spec.path).stat().st_mtime_ns
        except FileNotFoundError:
            return 0

    def is_fresh(self, outputs: list[ArtifactSpec], inputs: list[ArtifactSpec]) -> bool:
        """Every output is at least as new as every input."""
        if not inputs:
            return True
        newest_input = max(self.mtime_ns(spec) for spec in inputs)
        return all(self.mtime_ns(spec) >= newest_input for spec in outputs)

    # ------------------------------------------------------------------
    # Unknown validity
    # ------------------------------------------------------------------

    def taint(self, spec: ArtifactSpec, stage_id: str, reason: str = "") -> None:
        """Downgrade an artifact to unknown validity."""
        record = TaintRecord(path=str(spec.path), stage_id=stage_id, reason=reason)
        logger.warning(
            "Artifact %s (%s) left in unknown validity by %s", spec.name, spec.path, stage_id
        )
        if self._ledger is not None:
            self._ledger.set_taint(record)
        else:
            self._memory_taints[record.path] = record

    def clear_taint(self, spec: ArtifactSpec) -> None:
        if self._ledger is not None:
            self._ledger.clear_taint(str(spec.path))
        else:
            self._memory_taints.pop(str(spec.path), None)

    def get_taint(self, spec: ArtifactSpec) -> TaintRecord | None:
        if self._ledger is not None:
            return self._ledger.get_taint(str(spec.path))
        return self._memory_taints.get(str(spec.path))

    def is_tainted(self, spec: ArtifactSpec) -> bool:
        return self.get_taint(spec) is not None

    # ------------------------------------------------------------------
    # Stamps
    # ------------------------------------------------------------------

    @staticmethod
    def write_stamp(spec: ArtifactSpec, content: str = "") -> None:
        """Atomically (re)write a stamp artifact, advancing its timestamp."""
        with atomic_write_path(spec.path) as tmp:
            tmp.write_text(content, encoding="utf-8")
