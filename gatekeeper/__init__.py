"""Gatekeeper package init for ai-request-gatekeeper.

This package guards the AI-generation endpoint with small modules grouped by
responsibility:
- rate_limit: per-session and per-IP fixed-window limiters (plus the slowapi route limiter)
- envelope: AES-256-CBC payload cipher, HMAC request signer and replay guard
- csrf: short-lived per-session CSRF tokens
- sanitizer: prompt cleaning and pluggable content policies
- security: ``SecurityMiddleware``, the admission pipeline the routers call

The FastAPI app lives in ``gatekeeper.main``.
"""

from . import envelope  # expose the envelope helpers as gatekeeper.envelope
from . import security  # expose the admission pipeline

__all__ = [
    "envelope",
    "security",
]
