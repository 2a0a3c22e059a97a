"""Time-bounded in-memory cache used for prefetched session content."""

import time
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """Thread-safe cache whose entries expire ``ttl_seconds`` after insertion.

    Instances are injected into the components that need them; nothing in
    the engine keeps process-wide cache state.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_size: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.max_size = int(max_size)
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = Lock()

    def set(self, key: Hashable, value: Any) -> None:
        """Store ``value``; the oldest entry is evicted once the cache is full."""
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_expired()
                if len(self._entries) >= self.max_size:
                    oldest = min(self._entries, key=lambda k: self._entries[k][0])
                    self._entries.pop(oldest, None)
            self._entries[key] = (self._clock(), value)

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return the cached value, or ``default`` when missing or stale."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_seconds:
                self._entries.pop(key, None)
                return default
            return value

    def pop(self, key: Hashable, default: Any = None) -> Any:
        """Remove and return a fresh entry."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return default
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_seconds:
                return default
            return value

    def sweep(self) -> int:
        """Drop stale entries; returns how many were removed."""
        with self._lock:
            return self._evict_expired()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_expired(self) -> int:
        now = self._clock()
        stale = [key for key, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in stale:
            self._entries.pop(key, None)
        return len(stale)
