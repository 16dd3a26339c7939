"""Admission pipeline for the AI-generation endpoint.

``SecurityMiddleware`` is the only component the HTTP layer talks to.  It
composes the origin allow-list, the session and IP limiters, the optional
CSRF check and the encrypted envelope (replay window, HMAC signature,
decryption), and either returns an ``AdmittedRequest`` or raises a typed
``SecurityError``.  Nothing is retried and nothing is downgraded to "allow".
"""
from __future__ import annotations

import logging
import secrets
import string
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from gatekeeper.clock import Clock, SystemClock
from gatekeeper.config import SecuritySettings
from gatekeeper.csrf import CSRFTokenStore
from gatekeeper.envelope import PayloadCipher, ReplayGuard, RequestSigner
from gatekeeper.errors import DecryptionError, SecurityError, SecurityErrorCode
from gatekeeper.rate_limit import IPRateLimiter, SlidingWindowLimiter, extract_client_ip, get_header
from gatekeeper.sanitizer import ContentPolicy, build_policy, sanitize_prompt

log = logging.getLogger(__name__)

_SESSION_ALPHABET = string.ascii_lowercase + string.digits
_CSRF_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def generate_session_id(clock: Optional[Clock] = None) -> str:
    """``session_<ms>_<9 random base36 chars>``."""
    now = (clock or SystemClock()).now_ms()
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"session_{now}_{suffix}"


def log_security_event(
    event_type: str,
    session_id: str,
    client_ip: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    entry = {
        "type": event_type,
        "session_id": session_id,
        "client_ip": client_ip,
        "details": details or {},
    }
    log.warning(
        "Security event %s: session=%s ip=%s details=%s",
        event_type, session_id, client_ip, entry["details"],
        extra={"security_event": entry},
    )


@dataclass
class RequestContext:
    """The parts of an HTTP request the pipeline looks at."""
    headers: Mapping[str, str]
    body: Optional[Any] = None
    method: str = "POST"


@dataclass
class AdmittedRequest:
    session_id: str
    client_ip: str
    payload: Optional[Any] = None
    details: Dict[str, Any] = field(default_factory=dict)


class SecurityMiddleware:
    """Orchestrates origin, rate-limit, CSRF and envelope checks."""

    def __init__(
        self,
        settings: SecuritySettings,
        *,
        clock: Optional[Clock] = None,
        session_limiter: Optional[SlidingWindowLimiter] = None,
        ip_limiter: Optional[IPRateLimiter] = None,
        csrf_store: Optional[CSRFTokenStore] = None,
        content_policy: Optional[ContentPolicy] = None,
    ):
        self.settings = settings
        self.clock = clock or SystemClock()
        self.session_limiter = session_limiter or SlidingWindowLimiter(
            settings.window_ms, settings.max_requests, clock=self.clock, name="session"
        )
        self.ip_limiter = ip_limiter or IPRateLimiter(
            settings.ip_window_ms, settings.ip_max_requests, clock=self.clock
        )
        self.csrf_store = csrf_store or CSRFTokenStore(clock=self.clock, ttl_ms=settings.csrf_ttl_ms)
        self.cipher = PayloadCipher(settings.encryption_key, clock=self.clock)
        self.signer = RequestSigner(settings.encryption_key)
        self.replay_guard = ReplayGuard(self.clock, settings.replay_max_age_ms)
        self.content_policy = content_policy or build_policy(settings.content_policy, settings.sensitive_words)

    # -------------------------------------------------------------------------
    # Individual checks
    # -------------------------------------------------------------------------

    def validate_origin(self, headers: Mapping[str, str]) -> bool:
        """Allow-list check on ``Origin`` (or the origin of ``Referer``).

        Requests carrying neither header are allowed (same-origin and
        non-browser clients).
        """
        origin = get_header(headers, "origin")
        referer = get_header(headers, "referer")
        if not origin and not referer:
            return True
        if self.settings.allow_all_origins:
            return True
        if not origin:
            parsed = urlparse(referer)
            origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme and parsed.netloc else ""
        return origin in self.settings.allowed_origins

    def check_request_size(self, headers: Mapping[str, str], body_size: Optional[int] = None) -> None:
        """Reject a body larger than ``max_request_bytes``.

        With ``body_size`` omitted the declared ``Content-Length`` is checked,
        so oversized uploads are refused before anything is read.
        """
        size = body_size
        if size is None:
            declared = get_header(headers, "content-length")
            try:
                size = int(declared) if declared else None
            except ValueError:
                size = None
        limit = self.settings.max_request_bytes
        if size is None or size <= limit:
            return
        exc = SecurityError(SecurityErrorCode.REQUEST_TOO_LARGE, details={"size": size, "limit": limit})
        log_security_event(
            exc.code.value,
            get_header(headers, "x-session-id") or "unknown",
            extract_client_ip(headers),
            exc.details,
        )
        raise exc

    def check_rate_limit(self, session_id: str) -> bool:
        return self.session_limiter.check_limit(session_id)

    def _check_csrf(self, request: RequestContext, session_id: str) -> None:
        if not self.settings.require_csrf or request.method.upper() not in _CSRF_METHODS:
            return
        token = get_header(request.headers, "x-csrf-token") or get_header(request.headers, "csrf-token")
        if not self.csrf_store.validate_token(session_id, token):
            raise SecurityError(SecurityErrorCode.CSRF_TOKEN_INVALID)

    def open_envelope(self, request: RequestContext) -> Any:
        """Run presence, replay, signature and decryption checks; return the payload."""
        headers = request.headers
        body = request.body if isinstance(request.body, dict) else {}

        is_encrypted = (get_header(headers, "x-encrypted-request") or "").strip().lower() == "true"
        ciphertext = body.get("encrypted") if is_encrypted else None
        if not isinstance(ciphertext, str):
            ciphertext = None
        signature = get_header(headers, "x-signature")
        timestamp = get_header(headers, "x-timestamp") or body.get("timestamp")
        iv = get_header(headers, "x-iv") or body.get("iv")

        if not ciphertext or not signature or timestamp in (None, "") or not iv:
            raise SecurityError(
                SecurityErrorCode.MISSING_ENCRYPTION_HEADERS,
                details={
                    "has_encrypted_data": bool(ciphertext),
                    "has_signature": bool(signature),
                    "has_timestamp": timestamp not in (None, ""),
                    "has_iv": bool(iv),
                },
            )

        if not self.replay_guard.is_timestamp_valid(timestamp):
            raise SecurityError(SecurityErrorCode.INVALID_TIMESTAMP, details={"timestamp": timestamp})

        if not self.signer.verify(ciphertext, timestamp, signature):
            raise SecurityError(SecurityErrorCode.INVALID_SIGNATURE)

        try:
            return self.cipher.decrypt(ciphertext, str(iv))
        except DecryptionError as exc:
            raise SecurityError(SecurityErrorCode.DECRYPTION_FAILED, details={"reason": str(exc)}) from exc

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def validate_request(
        self,
        request: RequestContext,
        *,
        encrypted: bool = True,
        endpoint: str = "generate",
    ) -> AdmittedRequest:
        """Admit *request* or raise SecurityError / RateLimitError.

        The rate-limit check, the envelope checks and the final accounting
        run while both the session key and the IP key are locked, so two
        concurrent requests for one key cannot both slip under the limit.
        """
        session_id = get_header(request.headers, "x-session-id") or generate_session_id(self.clock)
        client_ip = extract_client_ip(request.headers)

        try:
            if not self.validate_origin(request.headers):
                raise SecurityError(
                    SecurityErrorCode.INVALID_ORIGIN,
                    details={"origin": get_header(request.headers, "origin") or get_header(request.headers, "referer")},
                )

            with ExitStack() as stack:
                # Lock order is always session then IP
                stack.enter_context(self.session_limiter.admission(session_id))
                stack.enter_context(self.ip_limiter.admission(client_ip))

                self.session_limiter.check_limit(session_id)
                self.ip_limiter.check_limit(client_ip)
                self._check_csrf(request, session_id)

                payload = self.open_envelope(request) if encrypted else request.body

                self.session_limiter.record_request(session_id, endpoint, True)
                self.ip_limiter.record_request(client_ip, endpoint, True)
        except SecurityError as exc:
            log_security_event(exc.code.value, session_id, client_ip, exc.details)
            raise

        log.debug("Admitted request session=%s ip=%s endpoint=%s", session_id, client_ip, endpoint)
        return AdmittedRequest(
            session_id=session_id,
            client_ip=client_ip,
            payload=payload,
            details={"remaining_requests": self.session_limiter.get_remaining_requests(session_id)},
        )

    def sanitize_prompt(self, text: object) -> str:
        return sanitize_prompt(text, self.settings.max_prompt_length, self.content_policy)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def cleanup(self) -> Dict[str, int]:
        return {
            "sessions": self.session_limiter.cleanup(),
            "ips": self.ip_limiter.cleanup(),
            "csrf_tokens": self.csrf_store.cleanup(),
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "sessions": self.session_limiter.get_stats(),
            "ips": self.ip_limiter.get_stats(),
            "csrf_tokens": len(self.csrf_store),
        }


# Global instance (lazy initialized)
_global_middleware: Optional[SecurityMiddleware] = None
_global_lock = threading.Lock()


def get_security_middleware() -> SecurityMiddleware:
    """Get or create the process-wide middleware built from the environment."""
    global _global_middleware
    with _global_lock:
        if _global_middleware is None:
            _global_middleware = SecurityMiddleware(SecuritySettings.from_env())
        return _global_middleware


def reset_security_middleware(middleware: Optional[SecurityMiddleware] = None) -> None:
    """Replace (or drop) the global instance; used by tests and on reload."""
    global _global_middleware
    with _global_lock:
        _global_middleware = middleware


__all__ = [
    "AdmittedRequest",
    "RequestContext",
    "SecurityMiddleware",
    "generate_session_id",
    "get_security_middleware",
    "log_security_event",
    "reset_security_middleware",
]
