"""Time sources in milliseconds.

Everything time-windowed in the gatekeeper (rate-limit windows, block
cool-downs, CSRF expiry, replay checks) compares against ``Clock.now_ms()``
instead of calling ``time`` directly, so tests can drive time by hand.
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Minimal contract for a millisecond wall clock."""

    @abstractmethod
    def now_ms(self) -> int:
        """Return the current time as integer milliseconds since the epoch."""


class SystemClock(Clock):
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now = int(start_ms)
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def advance(self, ms: int) -> int:
        with self._lock:
            self._now += int(ms)
            return self._now

    def set(self, ms: int) -> None:
        with self._lock:
            self._now = int(ms)


__all__ = ["Clock", "SystemClock", "ManualClock"]
