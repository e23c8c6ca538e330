"""Process-wide cancellation signal.

Every suspension point (network transfer, subprocess wait, probe polling)
waits on the same token, so SIGINT/SIGTERM interrupts whichever one is
active without leaving a half-written artifact behind.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

from geoforge.errors import CancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot, thread-safe cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning("Cancellation requested: %s", reason)
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self.reason or "cancelled")

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT and SIGTERM to ``token`` for the duration of the block.

    Previous handlers are restored on exit.  Outside the main thread this is
    a no-op, since Python only delivers signals there.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
