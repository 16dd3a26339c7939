"""Background garbage collection for limiter records and CSRF tokens.

The sweep bounds memory; it is not needed for correctness, since every
check compares against the clock on its own.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

log = logging.getLogger(__name__)


class Sweeper:
    """Run ``cleanup`` every *interval_seconds* on a daemon thread."""

    def __init__(self, cleanup: Callable[[], Dict[str, int]], interval_seconds: float = 300.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._cleanup = cleanup
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Dict[str, int]:
        """One sweep; failures are logged, never raised."""
        try:
            removed = self._cleanup()
        except Exception:
            log.exception("Sweep failed")
            return {}
        if any(removed.values()):
            log.info("Sweep removed %s", removed)
        return removed

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="gatekeeper-sweeper", daemon=True)
        self._thread.start()
        log.debug("Sweeper started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["Sweeper"]
