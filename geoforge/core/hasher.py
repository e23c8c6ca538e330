"""Streaming SHA-256 helpers for artifact integrity checks.

Artifacts are routinely hundreds of megabytes, so nothing here reads a
whole file into memory.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

_READ_SIZE = 4 * 1024 * 1024


def file_sha256(path: Path, *, read_size: int = _READ_SIZE) -> str:
    """Return the SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for block in iter(lambda: fh.read(read_size), b""):
            digest.update(block)
    return digest.hexdigest()


class DigestCache:
    """Memoise file digests by (path, size, mtime_ns).

    A file whose size and modification time are unchanged is not re-hashed
    within the lifetime of this cache (one orchestrator run).
    """

    def __init__(self) -> None:
        self._digests: dict[tuple[str, int, int], str] = {}

    def digest(self, path: Path) -> str:
        st = Path(path).stat()
        key = (str(path), st.st_size, st.st_mtime_ns)
        cached = self._digests.get(key)
        if cached is None:
            cached = file_sha256(path)
            self._digests[key] = cached
        return cached

    def clear(self) -> None:
        self._digests.clear()
