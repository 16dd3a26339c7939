"""Rate limiting for the gatekeeper.

Two layers live here:

* ``SlidingWindowLimiter`` / ``IPRateLimiter``: keyed fixed-window counters
  with cool-down blocking that guard the AI-generation endpoint, one keyed
  by session id and one keyed by client IP.  Both must admit a request.
* ``limiter``: a coarse `slowapi` per-IP limit applied to the cheap utility
  routes (CSRF token issuance, stats) that do not go through the full
  admission pipeline.

Env vars
--------
RATE_LIMIT_WINDOW / RATE_LIMIT_MAX_REQUESTS : int
    Session window (ms) and quota.
IP_RATE_LIMIT_WINDOW / IP_RATE_LIMIT_MAX_REQUESTS : int
    IP window (ms) and quota.
RATE_LIMIT_DEFAULT : str
    slowapi limit string for utility routes (e.g. ``"60/minute"``).
"""
from __future__ import annotations

import logging
import math
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, Mapping, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from gatekeeper import config
from gatekeeper.clock import Clock, SystemClock
from gatekeeper.errors import RateLimitError
from gatekeeper.store import InMemorySessionStore, SessionStore

log = logging.getLogger(__name__)

HISTORY_CAPACITY = 100
UNKNOWN_IP = "unknown"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class RequestRecord:
    """One accounted request."""
    timestamp: int
    endpoint: str
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "endpoint": self.endpoint, "success": self.success}


@dataclass
class LimiterRecord:
    """Counter state for one key (a session id or a client IP)."""
    window_start: int
    request_count: int = 0
    is_blocked: bool = False
    blocked_until: Optional[int] = None
    request_history: Deque[RequestRecord] = field(
        default_factory=lambda: deque(maxlen=HISTORY_CAPACITY)
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_count": self.request_count,
            "window_start": self.window_start,
            "is_blocked": self.is_blocked,
            "blocked_until": self.blocked_until,
            "request_history": [r.to_dict() for r in self.request_history],
        }


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def extract_client_ip(headers: Mapping[str, str]) -> str:
    """Resolve the originating client IP from proxy headers.

    Precedence: left-most ``X-Forwarded-For`` entry, then ``X-Real-IP``,
    then ``CF-Connecting-IP``, otherwise ``"unknown"``.
    """
    forwarded = get_header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = get_header(headers, "x-real-ip")
    if real_ip:
        return real_ip.strip()

    cf_ip = get_header(headers, "cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    return UNKNOWN_IP


# ---------------------------------------------------------------------------
# Fixed-window limiter
# ---------------------------------------------------------------------------

class SlidingWindowLimiter:
    """Keyed request counter with cool-down blocking.

    The window is a fixed roll-over window: once ``window_ms`` has passed
    since ``window_start`` the count restarts at zero with no carry-over.
    When a key reaches ``max_requests`` it is blocked until the end of the
    current window (or for ``cooldown_ms`` when set).

    All mutations of a key happen under that key's lock from the store, so
    ``admission(key)`` can be used to make check-then-record atomic.
    """

    def __init__(
        self,
        window_ms: Optional[int] = None,
        max_requests: Optional[int] = None,
        *,
        clock: Optional[Clock] = None,
        store: Optional[SessionStore[LimiterRecord]] = None,
        idle_ttl_ms: Optional[int] = None,
        cooldown_ms: Optional[int] = None,
        name: str = "session",
    ):
        self.window_ms = int(window_ms or config.RATE_LIMIT_WINDOW)
        self.max_requests = int(max_requests or config.RATE_LIMIT_MAX_REQUESTS)
        if self.window_ms <= 0 or self.max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.clock = clock or SystemClock()
        self.store: SessionStore[LimiterRecord] = store if store is not None else InMemorySessionStore()
        # Records are kept for two windows of inactivity by default
        self.idle_ttl_ms = int(idle_ttl_ms) if idle_ttl_ms is not None else self.window_ms * 2
        self.cooldown_ms = cooldown_ms
        self.name = name

    # -- internals ----------------------------------------------------------

    def _get_or_create(self, key: str, now: int) -> LimiterRecord:
        record = self.store.get(key)
        if record is None:
            record = LimiterRecord(window_start=now)
            self.store.set(key, record)
        return record

    def _roll_window(self, record: LimiterRecord, now: int) -> None:
        if now - record.window_start >= self.window_ms:
            record.window_start = now
            record.request_count = 0

    @staticmethod
    def _block_active(record: LimiterRecord, now: int) -> bool:
        return record.is_blocked and record.blocked_until is not None and now < record.blocked_until

    # -- public API ---------------------------------------------------------

    @contextmanager
    def admission(self, key: str) -> Iterator[None]:
        """Hold *key*'s lock so a check and the following record are atomic."""
        with self.store.lock(key):
            yield

    def check_limit(self, key: str) -> bool:
        """Return True if *key* may make another request, else raise RateLimitError."""
        with self.store.lock(key):
            now = self.clock.now_ms()
            record = self._get_or_create(key, now)

            if self._block_active(record, now):
                remaining_ms = record.blocked_until - now
                retry_after = math.ceil(remaining_ms / 1000)
                raise RateLimitError(
                    f"{self.name} is temporarily blocked, retry in {retry_after} seconds",
                    retry_after,
                    {"key": key, "blocked_until": record.blocked_until},
                )

            if record.is_blocked:
                record.is_blocked = False
                record.blocked_until = None

            self._roll_window(record, now)

            if record.request_count >= self.max_requests:
                if self.cooldown_ms is not None:
                    cooldown = int(self.cooldown_ms)
                else:
                    cooldown = record.window_start + self.window_ms - now
                record.is_blocked = True
                record.blocked_until = now + cooldown
                self.store.set(key, record)
                retry_after = math.ceil(cooldown / 1000)
                log.warning(
                    "%s limit reached: key=%s count=%d max=%d blocked_for=%dms",
                    self.name, key, record.request_count, self.max_requests, cooldown,
                )
                raise RateLimitError(
                    f"Rate limit exceeded: at most {self.max_requests} requests "
                    f"per {self.window_ms / 1000:g} seconds",
                    retry_after,
                    {
                        "key": key,
                        "request_count": record.request_count,
                        "max_requests": self.max_requests,
                    },
                )

            self.store.set(key, record)
            return True

    def record_request(self, key: str, endpoint: str = "unknown", success: bool = True) -> None:
        """Account one request against *key*."""
        with self.store.lock(key):
            now = self.clock.now_ms()
            record = self._get_or_create(key, now)
            self._roll_window(record, now)
            record.request_count += 1
            record.request_history.append(RequestRecord(timestamp=now, endpoint=endpoint, success=success))
            self.store.set(key, record)

    def reset_session(self, key: str) -> None:
        with self.store.lock(key):
            record = self.store.get(key)
            if record is None:
                return
            record.request_count = 0
            record.is_blocked = False
            record.blocked_until = None
            record.window_start = self.clock.now_ms()
            self.store.set(key, record)

    def block_session(self, key: str, duration_ms: Optional[int] = None) -> None:
        """Block *key* for *duration_ms* (one window by default), whatever its count."""
        duration = self.window_ms if duration_ms is None else int(duration_ms)
        with self.store.lock(key):
            now = self.clock.now_ms()
            record = self._get_or_create(key, now)
            record.is_blocked = True
            record.blocked_until = now + duration
            self.store.set(key, record)
        log.info("%s blocked manually: key=%s duration=%dms", self.name, key, duration)

    def unblock_session(self, key: str) -> None:
        """Lift a block; the request count is left as is."""
        with self.store.lock(key):
            record = self.store.get(key)
            if record is None:
                return
            record.is_blocked = False
            record.blocked_until = None
            self.store.set(key, record)

    def get_remaining_requests(self, key: str) -> int:
        with self.store.lock(key):
            record = self.store.get(key)
            if record is None:
                return self.max_requests
            if self.clock.now_ms() - record.window_start >= self.window_ms:
                return self.max_requests
            return max(0, self.max_requests - record.request_count)

    def get_reset_time(self, key: str) -> Optional[int]:
        """Millisecond timestamp at which the current window ends, or None."""
        with self.store.lock(key):
            record = self.store.get(key)
            if record is None:
                return None
            return record.window_start + self.window_ms

    def get_session_info(self, key: str) -> Optional[Dict[str, Any]]:
        with self.store.lock(key):
            record = self.store.get(key)
            return record.to_dict() if record is not None else None

    def cleanup(self) -> int:
        """Drop idle, unblocked records.  Returns how many were removed.

        Only one key's lock is held at a time so admission checks for other
        keys are never stalled by the sweep.
        """
        removed = 0
        for key in self.store.keys():
            try:
                with self.store.lock(key):
                    record = self.store.get(key)
                    if record is None:
                        continue
                    now = self.clock.now_ms()
                    if self._block_active(record, now):
                        continue
                    if now - record.window_start >= self.idle_ttl_ms:
                        if self.store.delete(key):
                            removed += 1
                    elif record.is_blocked:
                        # Block expired but the record is still live
                        record.is_blocked = False
                        record.blocked_until = None
                        self.store.set(key, record)
            except Exception:
                log.exception("%s cleanup failed for key=%s", self.name, key)
        if removed:
            log.debug("%s cleanup removed %d idle records", self.name, removed)
        return removed

    def get_stats(self) -> Dict[str, int]:
        now = self.clock.now_ms()
        total = active = blocked = total_requests = 0
        for key in self.store.keys():
            record = self.store.get(key)
            if record is None:
                continue
            total += 1
            total_requests += record.request_count
            if now - record.window_start < self.window_ms:
                active += 1
            if self._block_active(record, now):
                blocked += 1
        return {
            "total_sessions": total,
            "active_sessions": active,
            "blocked_sessions": blocked,
            "total_requests": total_requests,
        }

    def clear(self) -> None:
        self.store.clear()


class IPRateLimiter(SlidingWindowLimiter):
    """Same algorithm keyed by client IP, with its own window and quota."""

    def __init__(
        self,
        window_ms: Optional[int] = None,
        max_requests: Optional[int] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("name", "ip")
        super().__init__(
            window_ms or config.IP_RATE_LIMIT_WINDOW,
            max_requests or config.IP_RATE_LIMIT_MAX_REQUESTS,
            **kwargs,
        )

    @staticmethod
    def client_ip(headers: Mapping[str, str]) -> str:
        return extract_client_ip(headers)

    def check_ip_limit(self, client_ip: str) -> bool:
        return self.check_limit(client_ip)

    def record_ip_request(self, client_ip: str, endpoint: str = "unknown", success: bool = True) -> None:
        self.record_request(client_ip, endpoint, success)


# ---------------------------------------------------------------------------
# Coarse route limiter (slowapi)
# ---------------------------------------------------------------------------

def route_limit_key(request: Any) -> str:
    """slowapi key: proxy-aware client IP, falling back to the socket peer."""
    ip = extract_client_ip(request.headers)
    if ip == UNKNOWN_IP:
        return get_remote_address(request)
    return ip


DEFAULT_LIMIT: str = config.RATE_LIMIT_DEFAULT

# Single limiter instance shared across the app
limiter = Limiter(key_func=route_limit_key, default_limits=[DEFAULT_LIMIT])


__all__ = [
    "RequestRecord",
    "LimiterRecord",
    "SlidingWindowLimiter",
    "IPRateLimiter",
    "extract_client_ip",
    "get_header",
    "limiter",
    "DEFAULT_LIMIT",
    "HISTORY_CAPACITY",
]
