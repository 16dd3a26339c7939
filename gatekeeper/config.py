"""Centralized configuration for the gatekeeper service.

All tunables are read from the environment (optionally via a ``.env`` file
at the project root) so the limiter windows, the shared encryption key and
the origin allow-list can be changed without touching code.
"""
from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# Try to load .env file from project root
try:
    from dotenv import load_dotenv
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(env_path)
except ImportError:
    pass

log = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Invalid integer for %s=%r, using default %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_list(raw: Optional[str]) -> List[str]:
    """Split a comma-separated env value, dropping blanks."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


# Session rate limiting (window in milliseconds)
RATE_LIMIT_WINDOW = _env_int("RATE_LIMIT_WINDOW", 60_000)
RATE_LIMIT_MAX_REQUESTS = _env_int("RATE_LIMIT_MAX_REQUESTS", 10)

# Per-IP rate limiting, counted independently from sessions
IP_RATE_LIMIT_WINDOW = _env_int("IP_RATE_LIMIT_WINDOW", 60_000)
IP_RATE_LIMIT_MAX_REQUESTS = _env_int("IP_RATE_LIMIT_MAX_REQUESTS", 30)

# Coarse slowapi limit for utility routes (csrf-token, stats)
RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")

# Encryption envelope
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")
REPLAY_MAX_AGE_MS = _env_int("REPLAY_MAX_AGE_MS", 300_000)

# Origins ("*" means allow all)
ALLOWED_ORIGINS = parse_list(os.getenv("ALLOWED_ORIGINS"))

# CSRF
CSRF_TOKEN_TTL_MS = _env_int("CSRF_TOKEN_TTL_MS", 3_600_000)
REQUIRE_CSRF = _env_bool("REQUIRE_CSRF", False)

# Request body cap (bytes), checked on Content-Length and on the bytes actually read
MAX_REQUEST_BYTES = _env_int("MAX_REQUEST_BYTES", 10_485_760)

# Prompt sanitization
MAX_PROMPT_LENGTH = _env_int("MAX_PROMPT_LENGTH", 2000)
DEFAULT_SENSITIVE_WORDS = [
    "暴力", "血腥", "色情", "政治", "恐怖", "仇恨", "歧视",
    "violence", "bloody", "porn", "political", "terror", "hate", "discrimination",
]
SENSITIVE_WORDS = parse_list(os.getenv("SENSITIVE_WORDS")) or list(DEFAULT_SENSITIVE_WORDS)
CONTENT_POLICY = os.getenv("CONTENT_POLICY", "substring").lower().strip()

# Background sweeper
CLEANUP_INTERVAL_SECONDS = _env_int("CLEANUP_INTERVAL_SECONDS", 300)

# Response headers
FORCE_HTTPS = _env_bool("FORCE_HTTPS", False)
HSTS_MAX_AGE = _env_int("HSTS_MAX_AGE", 31_536_000)
CSP_ENABLED = _env_bool("CSP_ENABLED", False)
DEFAULT_CSP_DIRECTIVES = [
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
    "font-src 'self' https://fonts.gstatic.com",
    "img-src 'self' data: blob: https:",
    "connect-src 'self' https://generativelanguage.googleapis.com",
    "media-src 'self' blob:",
    "object-src 'none'",
    "base-uri 'self'",
    "form-action 'self'",
    "frame-ancestors 'none'",
    "upgrade-insecure-requests",
]
CONTENT_SECURITY_POLICY = os.getenv("CONTENT_SECURITY_POLICY") or "; ".join(DEFAULT_CSP_DIRECTIVES)


@dataclass
class SecuritySettings:
    """Everything the security middleware needs, in one place."""

    encryption_key: str = ""
    window_ms: int = RATE_LIMIT_WINDOW
    max_requests: int = RATE_LIMIT_MAX_REQUESTS
    ip_window_ms: int = IP_RATE_LIMIT_WINDOW
    ip_max_requests: int = IP_RATE_LIMIT_MAX_REQUESTS
    allowed_origins: List[str] = field(default_factory=list)
    replay_max_age_ms: int = REPLAY_MAX_AGE_MS
    csrf_ttl_ms: int = CSRF_TOKEN_TTL_MS
    require_csrf: bool = REQUIRE_CSRF
    max_prompt_length: int = MAX_PROMPT_LENGTH
    max_request_bytes: int = MAX_REQUEST_BYTES
    sensitive_words: List[str] = field(default_factory=lambda: list(DEFAULT_SENSITIVE_WORDS))
    content_policy: str = "substring"

    @property
    def allow_all_origins(self) -> bool:
        return not self.allowed_origins or "*" in self.allowed_origins

    @classmethod
    def from_env(cls) -> "SecuritySettings":
        """Build settings from the environment.

        A missing ``ENCRYPTION_KEY`` is not fatal: an ephemeral random key is
        used so the service still starts, but no client can produce a valid
        signature until the shared key is configured.
        """
        key = os.getenv("ENCRYPTION_KEY") or ENCRYPTION_KEY
        if not key:
            log.warning("ENCRYPTION_KEY is not set; using an ephemeral key, encrypted requests will be rejected")
            key = secrets.token_hex(32)
        return cls(
            encryption_key=key,
            window_ms=_env_int("RATE_LIMIT_WINDOW", RATE_LIMIT_WINDOW),
            max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", RATE_LIMIT_MAX_REQUESTS),
            ip_window_ms=_env_int("IP_RATE_LIMIT_WINDOW", IP_RATE_LIMIT_WINDOW),
            ip_max_requests=_env_int("IP_RATE_LIMIT_MAX_REQUESTS", IP_RATE_LIMIT_MAX_REQUESTS),
            allowed_origins=parse_list(os.getenv("ALLOWED_ORIGINS")) or list(ALLOWED_ORIGINS),
            replay_max_age_ms=_env_int("REPLAY_MAX_AGE_MS", REPLAY_MAX_AGE_MS),
            csrf_ttl_ms=_env_int("CSRF_TOKEN_TTL_MS", CSRF_TOKEN_TTL_MS),
            require_csrf=_env_bool("REQUIRE_CSRF", REQUIRE_CSRF),
            max_prompt_length=_env_int("MAX_PROMPT_LENGTH", MAX_PROMPT_LENGTH),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", MAX_REQUEST_BYTES),
            sensitive_words=parse_list(os.getenv("SENSITIVE_WORDS")) or list(SENSITIVE_WORDS),
            content_policy=os.getenv("CONTENT_POLICY", CONTENT_POLICY).lower().strip(),
        )
