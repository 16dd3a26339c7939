"""Tests for gatekeeper.rate_limit: fixed-window limiters and IP extraction."""
from __future__ import annotations

import pytest

from gatekeeper.clock import ManualClock
from gatekeeper.errors import RateLimitError, SecurityErrorCode
from gatekeeper.rate_limit import (
    HISTORY_CAPACITY,
    IPRateLimiter,
    SlidingWindowLimiter,
    extract_client_ip,
    get_header,
)

WINDOW = 60_000


@pytest.fixture
def limiter(clock) -> SlidingWindowLimiter:
    return SlidingWindowLimiter(WINDOW, 3, clock=clock)


def _record(limiter, key, n):
    for _ in range(n):
        limiter.record_request(key, "generate")


# =====================================================================
# check_limit / record_request
# =====================================================================

class TestCheckLimit:
    def test_fresh_key_is_admitted(self, limiter):
        assert limiter.check_limit("s1") is True

    def test_below_max_is_admitted(self, limiter):
        _record(limiter, "s1", 2)
        assert limiter.check_limit("s1") is True

    def test_at_max_is_rejected(self, limiter):
        _record(limiter, "s1", 3)
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_limit("s1")
        assert exc_info.value.code == SecurityErrorCode.RATE_LIMITED
        assert exc_info.value.status_code == 429

    def test_five_per_minute_sixth_waits_full_window(self, clock):
        limiter = SlidingWindowLimiter(60_000, 5, clock=clock)
        for _ in range(5):
            assert limiter.check_limit("s1") is True
            limiter.record_request("s1", "generate")
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_limit("s1")
        assert exc_info.value.retry_after_seconds == 60

    def test_block_lasts_until_end_of_window(self, limiter, clock):
        _record(limiter, "s1", 3)
        clock.advance(20_000)
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_limit("s1")
        assert exc_info.value.retry_after_seconds == 40

    def test_blocked_key_keeps_failing_with_shrinking_retry(self, limiter, clock):
        _record(limiter, "s1", 3)
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")
        clock.advance(30_500)
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_limit("s1")
        # ceil(29.5s)
        assert exc_info.value.retry_after_seconds == 30

    def test_admitted_again_after_window(self, limiter, clock):
        _record(limiter, "s1", 3)
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")
        clock.advance(WINDOW)
        assert limiter.check_limit("s1") is True
        assert limiter.get_remaining_requests("s1") == 3

    def test_window_rolls_over_without_carry(self, limiter, clock):
        _record(limiter, "s1", 2)
        clock.advance(WINDOW)
        limiter.record_request("s1")
        info = limiter.get_session_info("s1")
        assert info["request_count"] == 1
        assert info["window_start"] == clock.now_ms()

    def test_keys_are_independent(self, limiter):
        _record(limiter, "s1", 3)
        assert limiter.check_limit("s2") is True

    def test_cooldown_overrides_window_remainder(self, clock):
        limiter = SlidingWindowLimiter(WINDOW, 1, clock=clock, cooldown_ms=5_000)
        limiter.record_request("s1")
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_limit("s1")
        assert exc_info.value.retry_after_seconds == 5

    def test_history_is_capped(self, clock):
        limiter = SlidingWindowLimiter(WINDOW, 1000, clock=clock)
        _record(limiter, "s1", HISTORY_CAPACITY + 50)
        info = limiter.get_session_info("s1")
        assert len(info["request_history"]) == HISTORY_CAPACITY
        assert info["request_count"] == HISTORY_CAPACITY + 50

    def test_history_entries_carry_endpoint(self, limiter, clock):
        limiter.record_request("s1", "generate", success=False)
        entry = limiter.get_session_info("s1")["request_history"][0]
        assert entry == {"timestamp": clock.now_ms(), "endpoint": "generate", "success": False}

    def test_rejects_non_positive_config(self, clock):
        with pytest.raises(ValueError):
            SlidingWindowLimiter(-1, 3, clock=clock)


# =====================================================================
# Manual block / unblock / reset
# =====================================================================

class TestBlocking:
    def test_block_session_overrides_count(self, limiter):
        limiter.block_session("s1")
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_limit("s1")
        assert exc_info.value.retry_after_seconds == 60

    def test_block_session_custom_duration(self, limiter, clock):
        limiter.block_session("s1", 2_000)
        clock.advance(1_999)
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")
        clock.advance(1)
        assert limiter.check_limit("s1") is True

    def test_unblock_keeps_request_count(self, limiter):
        limiter.record_request("s1")
        limiter.block_session("s1")
        limiter.unblock_session("s1")
        info = limiter.get_session_info("s1")
        assert info["is_blocked"] is False
        assert info["blocked_until"] is None
        assert info["request_count"] == 1
        assert limiter.check_limit("s1") is True

    def test_unblock_at_max_blocks_again_on_next_check(self, limiter):
        _record(limiter, "s1", 3)
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")
        limiter.unblock_session("s1")
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")

    def test_reset_session(self, limiter):
        _record(limiter, "s1", 3)
        limiter.block_session("s1")
        limiter.reset_session("s1")
        assert limiter.check_limit("s1") is True
        assert limiter.get_remaining_requests("s1") == 3

    def test_unknown_key_operations_are_noops(self, limiter):
        limiter.unblock_session("missing")
        limiter.reset_session("missing")
        assert limiter.get_session_info("missing") is None


# =====================================================================
# Introspection
# =====================================================================

class TestIntrospection:
    def test_remaining_requests(self, limiter):
        assert limiter.get_remaining_requests("s1") == 3
        _record(limiter, "s1", 2)
        assert limiter.get_remaining_requests("s1") == 1
        _record(limiter, "s1", 5)
        assert limiter.get_remaining_requests("s1") == 0

    def test_remaining_resets_after_window(self, limiter, clock):
        _record(limiter, "s1", 3)
        clock.advance(WINDOW)
        assert limiter.get_remaining_requests("s1") == 3

    def test_reset_time(self, limiter, clock):
        assert limiter.get_reset_time("s1") is None
        start = clock.now_ms()
        limiter.record_request("s1")
        assert limiter.get_reset_time("s1") == start + WINDOW

    def test_stats(self, limiter, clock):
        _record(limiter, "s1", 3)
        _record(limiter, "s2", 1)
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")
        stats = limiter.get_stats()
        assert stats == {
            "total_sessions": 2,
            "active_sessions": 2,
            "blocked_sessions": 1,
            "total_requests": 4,
        }

    def test_clear(self, limiter):
        _record(limiter, "s1", 2)
        limiter.clear()
        assert limiter.get_stats()["total_sessions"] == 0


# =====================================================================
# cleanup
# =====================================================================

class TestCleanup:
    def test_removes_idle_records(self, limiter, clock):
        limiter.record_request("s1")
        clock.advance(2 * WINDOW)
        assert limiter.cleanup() == 1
        assert limiter.get_session_info("s1") is None

    def test_keeps_recent_records(self, limiter, clock):
        limiter.record_request("s1")
        clock.advance(WINDOW)
        assert limiter.cleanup() == 0
        assert limiter.get_session_info("s1") is not None

    def test_keeps_actively_blocked_records(self, limiter, clock):
        limiter.block_session("s1", 10 * WINDOW)
        clock.advance(3 * WINDOW)
        assert limiter.cleanup() == 0
        with pytest.raises(RateLimitError):
            limiter.check_limit("s1")

    def test_custom_idle_ttl(self, clock):
        limiter = SlidingWindowLimiter(WINDOW, 3, clock=clock, idle_ttl_ms=1_000)
        limiter.record_request("s1")
        clock.advance(1_000)
        assert limiter.cleanup() == 1


# =====================================================================
# IP limiter & header helpers
# =====================================================================

class TestIPRateLimiter:
    def test_independent_quota(self, clock):
        ip_limiter = IPRateLimiter(WINDOW, 2, clock=clock)
        assert ip_limiter.name == "ip"
        ip_limiter.record_ip_request("1.2.3.4")
        assert ip_limiter.check_ip_limit("1.2.3.4") is True
        ip_limiter.record_ip_request("1.2.3.4")
        with pytest.raises(RateLimitError) as exc_info:
            ip_limiter.check_ip_limit("1.2.3.4")
        assert exc_info.value.details["key"] == "1.2.3.4"

    def test_client_ip_helper(self):
        assert IPRateLimiter.client_ip({"X-Real-IP": "9.9.9.9"}) == "9.9.9.9"


class TestExtractClientIp:
    def test_forwarded_for_first_entry(self):
        headers = {"X-Forwarded-For": " 203.0.113.7 , 10.0.0.1"}
        assert extract_client_ip(headers) == "203.0.113.7"

    def test_forwarded_for_wins_over_real_ip(self):
        headers = {"X-Forwarded-For": "203.0.113.7", "X-Real-IP": "198.51.100.1"}
        assert extract_client_ip(headers) == "203.0.113.7"

    def test_real_ip(self):
        assert extract_client_ip({"x-real-ip": "198.51.100.1"}) == "198.51.100.1"

    def test_cloudflare_header(self):
        assert extract_client_ip({"CF-Connecting-IP": "192.0.2.5"}) == "192.0.2.5"

    def test_unknown_when_no_header(self):
        assert extract_client_ip({}) == "unknown"

    def test_get_header_is_case_insensitive(self):
        assert get_header({"X-Session-Id": "abc"}, "x-session-id") == "abc"
        assert get_header({"x-session-id": "abc"}, "X-Session-Id") == "abc"
        assert get_header({}, "x-session-id") is None


def test_manual_clock_drives_time():
    clock = ManualClock(start_ms=0)
    clock.advance(1_500)
    assert clock.now_ms() == 1_500
    clock.set(10)
    assert clock.now_ms() == 10
