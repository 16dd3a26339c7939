"""Keyed state storage for limiters and token stores.

The limiters never touch a dict directly; they go through ``SessionStore`` so
the in-memory default can later be replaced by a shared cache without
changing any call site.  A store also hands out the lock that serialises
work on one key.
"""
from __future__ import annotations

import threading
import zlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

DEFAULT_LOCK_STRIPES = 64


class SessionStore(ABC, Generic[T]):
    """Minimal contract for a keyed record store."""

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Return the record for *key* or None."""

    @abstractmethod
    def set(self, key: str, record: T) -> None:
        """Insert or replace the record for *key*."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove *key*; return True if something was removed."""

    @abstractmethod
    def keys(self) -> List[str]:
        """Snapshot of the stored keys."""

    @abstractmethod
    def lock(self, key: str) -> Any:
        """Return a re-entrant lock guarding *key*."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every record."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemorySessionStore(SessionStore[T]):
    """Process-local store backed by a dict.

    Per-key locks are striped over a fixed pool, so a key always maps to the
    same lock and the pool never grows with the number of keys.
    """

    def __init__(self, lock_stripes: int = DEFAULT_LOCK_STRIPES):
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be >= 1")
        self._records: Dict[str, T] = {}
        self._map_lock = threading.Lock()
        self._stripes = [threading.RLock() for _ in range(lock_stripes)]

    def get(self, key: str) -> Optional[T]:
        with self._map_lock:
            return self._records.get(key)

    def set(self, key: str, record: T) -> None:
        with self._map_lock:
            self._records[key] = record

    def delete(self, key: str) -> bool:
        with self._map_lock:
            return self._records.pop(key, None) is not None

    def keys(self) -> List[str]:
        with self._map_lock:
            return list(self._records.keys())

    def lock(self, key: str) -> threading.RLock:
        index = zlib.crc32(key.encode("utf-8")) % len(self._stripes)
        return self._stripes[index]

    def clear(self) -> None:
        with self._map_lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._records)


__all__ = ["SessionStore", "InMemorySessionStore"]
