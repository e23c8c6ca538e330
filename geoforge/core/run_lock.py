"""Advisory per-data-directory lock.

Only one orchestrator run may work on a data directory at a time.  The lock
file holds the owner's pid; a lock whose pid is no longer alive is stale
and is reclaimed.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from types import TracebackType

from geoforge.errors import LockHeldError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    return True


class RunLock:
    """Context manager around an exclusive-create pid file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._held = False

    def holder(self) -> int | None:
        """Pid recorded in the lock file, if readable."""
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid = self.holder()
                if pid is not None and pid != os.getpid() and _pid_alive(pid):
                    raise LockHeldError(
                        f"Data directory is locked by running process {pid} ({self.path})",
                        pid=pid,
                    )
                logger.warning("Reclaiming stale lock %s (pid %s)", self.path, pid)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(os.getpid()))
            self._held = True
            return
        raise LockHeldError(f"Could not acquire lock {self.path}")

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
