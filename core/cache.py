"""In-memory TTL cache, used for per-process entitlement state."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    def __init__(self, *, max_keys: int = 10_000):
        self._max_keys = max_keys
        self._lock = Lock()
        self._data: Dict[str, _Entry] = {}

    def get(self, key: str) -> Optional[Any]:
        now = time.time()
        with self._lock:
            entry = self._data.get(key)
            if not entry:
                return None
            if entry.expires_at <= now:
                self._data.pop(key, None)
                return None
            return entry.value

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: Any, *, ttl_seconds: float) -> None:
        expires_at = time.time() + float(ttl_seconds)
        with self._lock:
            if key not in self._data and len(self._data) >= self._max_keys:
                # Simple eviction: drop the oldest inserted key.
                self._data.pop(next(iter(self._data)), None)
            self._data[key] = _Entry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
