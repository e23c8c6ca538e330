"""Cache Invalidator — keeps derived caches no staler than their sources.

Each domain records, in ``.upstream-timestamp`` inside the domain
directory, the newest upstream mtime (ns) it was last cleared for.
``reconcile`` clears only when an upstream artifact is newer than that,
so the marker only ever moves forward.

Clearing is all-or-nothing: the whole directory is renamed aside in one
``os.rename`` and recreated empty.  If the rename fails the domain is left
exactly as it was and ``CacheInvalidationError`` is raised.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path

from geoforge.core.artifacts import ArtifactInspector, atomic_write_path
from geoforge.errors import CacheInvalidationError
from geoforge.models.artifacts import ArtifactSpec
from geoforge.models.caches import TIMESTAMP_MARKER, CacheDomain, CacheStats
from geoforge.models.reports import CacheReport

logger = logging.getLogger(__name__)


class CacheInvalidator:
    """Clears and reconciles cache domains."""

    # ------------------------------------------------------------------
    # Marker
    # ------------------------------------------------------------------

    @staticmethod
    def recorded_timestamp(domain: CacheDomain) -> int | None:
        """Upstream timestamp the domain was last cleared for, if any."""
        try:
            return int(domain.marker_path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning("Unreadable cache marker %s; treating as absent", domain.marker_path)
            return None

    @staticmethod
    def _record(domain: CacheDomain, timestamp_ns: int) -> None:
        domain.path.mkdir(parents=True, exist_ok=True)
        with atomic_write_path(domain.marker_path) as tmp:
            tmp.write_text(str(timestamp_ns), encoding="utf-8")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def invalidate(self, domain: CacheDomain) -> CacheReport:
        """Unconditionally clear a domain (operator override)."""
        removed = self._clear(domain)
        logger.info("Cache %s invalidated (%d entries removed)", domain.name, removed)
        recorded = self.recorded_timestamp(domain) or 0
        return CacheReport(
            domain=domain.name,
            cleared=True,
            upstream_timestamp_ns=recorded,
            recorded_timestamp_ns=recorded,
            entries_removed=removed,
            reason="explicit invalidate",
        )

    def reconcile(
        self, domain: CacheDomain, upstream: list[ArtifactSpec]
    ) -> CacheReport:
        """Clear the domain only if an upstream artifact is newer than its marker."""
        upstream_ts = max((ArtifactInspector.mtime_ns(spec) for spec in upstream), default=0)
        recorded = self.recorded_timestamp(domain)

        if upstream_ts == 0:
            return CacheReport(
                domain=domain.name,
                cleared=False,
                recorded_timestamp_ns=recorded or 0,
                reason="no upstream artifacts exist",
            )
        if recorded is not None and upstream_ts <= recorded:
            return CacheReport(
                domain=domain.name,
                cleared=False,
                upstream_timestamp_ns=upstream_ts,
                recorded_timestamp_ns=recorded,
                reason="up to date",
            )

        removed = self._clear(domain)
        self._record(domain, upstream_ts)
        reason = "never reconciled" if recorded is None else "upstream changed"
        logger.info(
            "Cache %s cleared (%s, %d entries removed)", domain.name, reason, removed
        )
        return CacheReport(
            domain=domain.name,
            cleared=True,
            upstream_timestamp_ns=upstream_ts,
            recorded_timestamp_ns=recorded or 0,
            entries_removed=removed,
            reason=reason,
        )

    def stats(self, domain: CacheDomain) -> CacheStats:
        files = 0
        size = 0
        if domain.path.exists():
            for root, _dirs, names in os.walk(domain.path):
                for name in names:
                    if name == TIMESTAMP_MARKER and Path(root) == domain.path:
                        continue
                    files += 1
                    size += (Path(root) / name).stat().st_size
        return CacheStats(
            domain=domain.name,
            path=domain.path,
            files=files,
            size_bytes=size,
            upstream_timestamp_ns=self.recorded_timestamp(domain),
        )

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------

    def _clear(self, domain: CacheDomain) -> int:
        """Empty the domain atomically; the marker survives.  Returns entries removed."""
        path = domain.path
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            return 0
        entries = [p for p in path.iterdir() if p.name != TIMESTAMP_MARKER]
        if not entries:
            return 0

        trash = path.with_name(f".{path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(path, trash)
        except OSError as exc:
            raise CacheInvalidationError(
                f"Cannot clear cache {domain.name} at {path}: {exc}; left untouched",
                domain=domain.name,
            ) from exc

        try:
            path.mkdir()
            marker = trash / TIMESTAMP_MARKER
            if marker.exists():
                os.replace(marker, domain.marker_path)
        except OSError as exc:
            # Roll back to the original contents.
            shutil.rmtree(path, ignore_errors=True)
            os.rename(trash, path)
            raise CacheInvalidationError(
                f"Cannot recreate cache {domain.name} at {path}: {exc}; left untouched",
                domain=domain.name,
            ) from exc

        shutil.rmtree(trash, ignore_errors=True)
        if trash.exists():
            logger.warning("Stale cache contents left at %s; remove manually", trash)
        return len(entries)
