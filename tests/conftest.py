"""Shared fixtures for the gatekeeper test suite."""
from __future__ import annotations

from typing import Any, Dict, Optional

import pytest

from gatekeeper.clock import ManualClock
from gatekeeper.config import SecuritySettings
from gatekeeper.envelope import PayloadCipher, RequestSigner, build_encrypted_request
from gatekeeper.security import RequestContext, SecurityMiddleware


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

HEX_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
PASSPHRASE_KEY = "correct horse battery staple"
ALLOWED_ORIGIN = "https://app.example.com"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cipher(clock) -> PayloadCipher:
    return PayloadCipher(HEX_KEY, clock=clock)


@pytest.fixture
def signer() -> RequestSigner:
    return RequestSigner(HEX_KEY)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

def make_settings(**overrides: Any) -> SecuritySettings:
    """Small quotas so limits are easy to reach in tests."""
    values: Dict[str, Any] = dict(
        encryption_key=HEX_KEY,
        window_ms=60_000,
        max_requests=3,
        ip_window_ms=60_000,
        ip_max_requests=5,
        allowed_origins=[ALLOWED_ORIGIN],
        replay_max_age_ms=300_000,
        csrf_ttl_ms=3_600_000,
        require_csrf=False,
        max_prompt_length=2000,
        sensitive_words=["violence", "hate", "暴力"],
        content_policy="substring",
    )
    values.update(overrides)
    return SecuritySettings(**values)


@pytest.fixture
def settings() -> SecuritySettings:
    return make_settings()


@pytest.fixture
def make_middleware(clock):
    def _make(**overrides: Any) -> SecurityMiddleware:
        return SecurityMiddleware(make_settings(**overrides), clock=clock)
    return _make


@pytest.fixture
def middleware(make_middleware) -> SecurityMiddleware:
    return make_middleware()


def encrypted_request(
    cipher: PayloadCipher,
    signer: RequestSigner,
    payload: Any,
    session_id: Optional[str] = "session-a",
    extra_headers: Optional[Dict[str, str]] = None,
) -> RequestContext:
    """Build a RequestContext the way an encrypting client would send it."""
    headers, body = build_encrypted_request(cipher, signer, payload)
    if session_id is not None:
        headers["X-Session-Id"] = session_id
    headers.update(extra_headers or {})
    return RequestContext(headers=headers, body=body, method="POST")
