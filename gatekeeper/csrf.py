"""Short-lived per-session CSRF tokens."""
from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from gatekeeper.clock import Clock, SystemClock
from gatekeeper.store import InMemorySessionStore, SessionStore

log = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_MS = 3_600_000
TOKEN_PREFIX = "csrf_"


@dataclass
class CSRFToken:
    session_id: str
    token: str
    expires_at: int


class CSRFTokenStore:
    """Issues and validates one live token per session.

    Issuing a new token for a session replaces the previous one.  Expired
    tokens are evicted when validated and by ``cleanup()``.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        ttl_ms: int = DEFAULT_TOKEN_TTL_MS,
        store: Optional[SessionStore[CSRFToken]] = None,
    ):
        self.clock = clock or SystemClock()
        self.ttl_ms = int(ttl_ms)
        self.store: SessionStore[CSRFToken] = store if store is not None else InMemorySessionStore()

    def generate_token(self, session_id: str) -> str:
        now = self.clock.now_ms()
        token = f"{TOKEN_PREFIX}{now}_{secrets.token_hex(16)}"
        with self.store.lock(session_id):
            self.store.set(session_id, CSRFToken(session_id=session_id, token=token, expires_at=now + self.ttl_ms))
        return token

    def validate_token(self, session_id: str, token: Optional[str]) -> bool:
        with self.store.lock(session_id):
            stored = self.store.get(session_id)
            if stored is None:
                return False
            if self.clock.now_ms() >= stored.expires_at:
                self.store.delete(session_id)
                return False
            if not isinstance(token, str):
                return False
            return hmac.compare_digest(stored.token.encode("utf-8"), token.encode("utf-8"))

    def revoke_token(self, session_id: str) -> None:
        with self.store.lock(session_id):
            self.store.delete(session_id)

    def get_token_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        stored = self.store.get(session_id)
        if stored is None:
            return None
        return {"expires_at": stored.expires_at}

    def cleanup(self) -> int:
        """Remove expired tokens, one session lock at a time."""
        removed = 0
        for session_id in self.store.keys():
            try:
                with self.store.lock(session_id):
                    stored = self.store.get(session_id)
                    if stored is not None and self.clock.now_ms() >= stored.expires_at:
                        if self.store.delete(session_id):
                            removed += 1
            except Exception:
                log.exception("CSRF cleanup failed for session=%s", session_id)
        if removed:
            log.debug("CSRF cleanup removed %d expired tokens", removed)
        return removed

    def __len__(self) -> int:
        return len(self.store)


__all__ = ["CSRFToken", "CSRFTokenStore", "DEFAULT_TOKEN_TTL_MS"]
