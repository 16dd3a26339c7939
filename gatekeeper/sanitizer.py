"""Prompt sanitization for the AI-generation endpoint.

User prompts are cleaned before they are handed to the generation backend:

1. **Markup stripping**: angle brackets, ``javascript:`` / ``data:`` /
   ``vbscript:`` protocol prefixes and inline event handlers (``onload=``)
   are removed so nothing executable survives into rendered history.
2. **Control character removal**: invisible Unicode that could hide a
   payload is dropped.
3. **Length limiting**: prompts are truncated to ``MAX_PROMPT_LENGTH``.
4. **Content policy**: a pluggable predicate scans for denied terms and
   rejects the prompt, reporting the matched term.

The content policy is a plain callable ``str -> Optional[str]`` returning the
matched term (or None), so the denylist and the matching strategy can change
without touching the middleware.
"""
from __future__ import annotations

import re
from typing import Callable, Iterable, Optional

from gatekeeper import config
from gatekeeper.errors import SecurityError, SecurityErrorCode

ContentPolicy = Callable[[str], Optional[str]]

MAX_PROMPT_LENGTH = config.MAX_PROMPT_LENGTH

_ANGLE_BRACKETS_RE = re.compile(r"[<>]")
_PROTOCOL_RE = re.compile(r"(javascript|data|vbscript):", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)

# Characters that should be stripped (invisible/control characters)
_CONTROL_CHAR_RE = re.compile(
    r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f"
    r"\u200b-\u200f"           # Zero-width chars
    r"\u202a-\u202e"           # Bidi overrides
    r"\u2060-\u2064"           # Invisible formatters
    r"\ufeff"                  # BOM
    r"]"
)


# ---------------------------------------------------------------------------
# Content policies
# ---------------------------------------------------------------------------

def substring_policy(terms: Iterable[str]) -> ContentPolicy:
    """Case-insensitive substring match against each term."""
    lowered = [(term, term.lower()) for term in terms if term]

    def _match(text: str) -> Optional[str]:
        haystack = text.lower()
        for original, needle in lowered:
            if needle in haystack:
                return original
        return None

    return _match


def token_policy(terms: Iterable[str]) -> ContentPolicy:
    """Case-insensitive whole-word match, so ``hate`` does not hit ``whatever``."""
    compiled = [
        (term, re.compile(r"(?<!\w)" + re.escape(term) + r"(?!\w)", re.IGNORECASE))
        for term in terms if term
    ]

    def _match(text: str) -> Optional[str]:
        for original, pattern in compiled:
            if pattern.search(text):
                return original
        return None

    return _match


def build_policy(name: str, terms: Iterable[str]) -> ContentPolicy:
    if name == "substring":
        return substring_policy(terms)
    if name == "token":
        return token_policy(terms)
    raise ValueError(f"Unknown CONTENT_POLICY '{name}'. Supported values: substring, token")


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------

def strip_markup(text: str) -> str:
    """Remove markup until a pass changes nothing.

    A single pass would turn ``jajavascript:vascript:`` back into
    ``javascript:``, so the substitutions repeat to a fixed point.
    """
    previous = None
    while text != previous:
        previous = text
        text = _ANGLE_BRACKETS_RE.sub("", text)
        text = _PROTOCOL_RE.sub("", text)
        text = _EVENT_HANDLER_RE.sub("", text)
        text = _CONTROL_CHAR_RE.sub("", text)
    return text


def sanitize_prompt(
    text: object,
    max_length: int = MAX_PROMPT_LENGTH,
    policy: Optional[ContentPolicy] = None,
) -> str:
    """Return a cleaned prompt or raise SecurityError.

    Raises ``INVALID_PROMPT`` for non-string or empty input and
    ``SENSITIVE_CONTENT`` when the content policy matches.
    """
    if not isinstance(text, str) or not text.strip():
        raise SecurityError(SecurityErrorCode.INVALID_PROMPT, "Prompt must be a non-empty string")

    sanitized = strip_markup(text.strip()).strip()

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    if not sanitized:
        raise SecurityError(SecurityErrorCode.INVALID_PROMPT, "Prompt is empty after sanitization")

    if policy is None:
        policy = build_policy(config.CONTENT_POLICY, config.SENSITIVE_WORDS)

    matched = policy(sanitized)
    if matched is not None:
        raise SecurityError(
            SecurityErrorCode.SENSITIVE_CONTENT,
            f"Prompt contains sensitive content: {matched}",
            {"word": matched},
        )

    return sanitized


__all__ = [
    "ContentPolicy",
    "MAX_PROMPT_LENGTH",
    "build_policy",
    "sanitize_prompt",
    "strip_markup",
    "substring_policy",
    "token_policy",
]
