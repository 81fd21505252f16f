"""Time-to-live response cache."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ipcrpc.protocol.messages import fingerprint

MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ResponseCache:
    """Advisory cache keyed by ``fingerprint(event, args)``.

    Expired entries are evicted lazily on read. Nothing consults the cache
    automatically; callers wrap read-only commands with it explicitly.
    """

    def __init__(self, ttl_seconds: float = 5.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    @staticmethod
    def key(event: Optional[str], args: Any) -> str:
        return fingerprint(event, args)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return default
        return entry.value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl)

    def __contains__(self, key: str) -> bool:
        return self.get(key, MISSING) is not MISSING

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
