"""Typed rejections raised by the admission pipeline.

Every failure carries a stable ``code`` so clients can branch on it (for
example to show a cool-down timer on ``RATE_LIMITED``).  The HTTP layer
turns these into ``{"success": false, "error": {"code", "message"}}``.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class SecurityErrorCode(str, Enum):
    """Rejection codes surfaced to clients."""

    INVALID_ORIGIN = "INVALID_ORIGIN"
    RATE_LIMITED = "RATE_LIMITED"
    MISSING_ENCRYPTION_HEADERS = "MISSING_ENCRYPTION_HEADERS"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    SENSITIVE_CONTENT = "SENSITIVE_CONTENT"
    INVALID_PROMPT = "INVALID_PROMPT"
    CSRF_TOKEN_INVALID = "CSRF_TOKEN_INVALID"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"


_STATUS_BY_CODE: Dict[SecurityErrorCode, int] = {
    SecurityErrorCode.RATE_LIMITED: 429,
    SecurityErrorCode.INVALID_ORIGIN: 403,
    SecurityErrorCode.INVALID_SIGNATURE: 403,
    SecurityErrorCode.MISSING_ENCRYPTION_HEADERS: 403,
    SecurityErrorCode.CSRF_TOKEN_INVALID: 403,
    SecurityErrorCode.REQUEST_TOO_LARGE: 413,
    SecurityErrorCode.INVALID_TIMESTAMP: 400,
    SecurityErrorCode.DECRYPTION_FAILED: 400,
    SecurityErrorCode.SENSITIVE_CONTENT: 400,
    SecurityErrorCode.INVALID_PROMPT: 400,
}

_DEFAULT_MESSAGES: Dict[SecurityErrorCode, str] = {
    SecurityErrorCode.INVALID_ORIGIN: "Request origin is not allowed",
    SecurityErrorCode.RATE_LIMITED: "Too many requests",
    SecurityErrorCode.MISSING_ENCRYPTION_HEADERS: "Missing encryption headers or encrypted body; use the encrypting client",
    SecurityErrorCode.INVALID_TIMESTAMP: "Request timestamp is invalid or expired",
    SecurityErrorCode.INVALID_SIGNATURE: "Request signature verification failed",
    SecurityErrorCode.DECRYPTION_FAILED: "Request body could not be decrypted",
    SecurityErrorCode.SENSITIVE_CONTENT: "Prompt contains sensitive content",
    SecurityErrorCode.INVALID_PROMPT: "Invalid prompt",
    SecurityErrorCode.CSRF_TOKEN_INVALID: "Missing or invalid CSRF token",
    SecurityErrorCode.REQUEST_TOO_LARGE: "Request body exceeds the size limit",
}


def status_for(code: SecurityErrorCode) -> int:
    """HTTP status for a rejection code (400 for anything unmapped)."""
    return _STATUS_BY_CODE.get(code, 400)


class SecurityError(Exception):
    """A request failed one of the admission checks."""

    def __init__(
        self,
        code: SecurityErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = SecurityErrorCode(code)
        self.message = message or _DEFAULT_MESSAGES.get(self.code, self.code.value)
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return status_for(self.code)

    def to_response_body(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {"code": self.code.value, "message": self.message},
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class RateLimitError(SecurityError):
    """The key exceeded its quota or is inside a cool-down."""

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(SecurityErrorCode.RATE_LIMITED, message, details)
        self.retry_after_seconds = int(retry_after_seconds)

    def to_response_body(self) -> Dict[str, Any]:
        body = super().to_response_body()
        body["error"]["retry_after"] = self.retry_after_seconds
        return body


class DecryptionError(ValueError):
    """Ciphertext could not be turned back into the original JSON payload."""


__all__ = [
    "SecurityErrorCode",
    "SecurityError",
    "RateLimitError",
    "DecryptionError",
    "status_for",
]
