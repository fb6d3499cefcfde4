"""
Process-wide TTL cache for availability and reservation views

Entries expire lazily: a read after their TTL returns a miss and drops the
entry. There is no background sweeper.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60


@dataclass
class CacheEntry:
    """A cached value and the moment it was stored"""
    key: str
    value: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class TTLCache:
    """
    Key/value store with per-entry time-to-live.

    Args:
        default_ttl: TTL in seconds used when set() is called without one
        clock: Monotonic time source, injectable for tests
    """

    def __init__(self, default_ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if value is None:
            raise ValueError("TTLCache does not store None")
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss (absent or expired)"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def remaining(self, key: str) -> Optional[float]:
        """Seconds left before key expires, None on a miss"""
        if not self.has(key):
            return None
        entry = self._entries[key]
        return max(0.0, entry.ttl - (self._clock() - entry.stored_at))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self.keys())
