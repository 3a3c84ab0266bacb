"""Small in-memory key/value cache with optional expiry."""

import threading
import time
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float  # monotonic; 0 means never

    def expired(self, now: float) -> bool:
        return self.expires_at != 0 and now > self.expires_at


class Cache(Generic[T]):
    """Thread-safe cache. A ttl of 0 keeps entries until deleted."""

    def __init__(self, ttl: float = 0):
        self._ttl = ttl
        self._entries: dict[str, _Entry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[T | None, bool]:
        """Return (value, found). Expired entries are reported as missing."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(time.monotonic()):
                return None, False
            return entry.value, True

    def set(self, key: str, value: T) -> None:
        expires_at = time.monotonic() + self._ttl if self._ttl > 0 else 0
        with self._lock:
            self._entries[key] = _Entry(value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clean_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = time.monotonic()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.expired(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
