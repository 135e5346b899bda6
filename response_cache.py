"""In-memory TTL cache for raw provider responses."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float]


class ResponseCache:
    """Key/value store whose entries expire but remain readable as stale.

    Expired entries are kept so that a failed refresh can still serve the last
    good payload through ``get(key, allow_stale=True)``.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._store: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` in seconds, ``None`` or ``0`` never expires."""

        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._store[key] = _Entry(value=value, expires_at=expires_at)

    def get(self, key: str, *, allow_stale: bool = False) -> Any:
        with self._lock:
            entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at < self._clock() and not allow_stale:
            return None
        return entry.value

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


__all__ = ["ResponseCache"]
