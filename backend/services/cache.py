# backend/services/cache.py
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    stored_at: float


class TTLCache:
    """Bounded in-memory cache with per-entry expiry.

    When full, inserting a new key evicts the single entry with the oldest
    ``stored_at``. Hit/miss counters are informational only.
    """

    def __init__(self, ttl: float = 300, max_entries: int = 100,
                 time_func: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError('ttl must be positive')
        if max_entries < 1:
            raise ValueError('max_entries must be at least 1')
        self.ttl = ttl
        self.max_entries = max_entries
        self._time_func = time_func
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at < self.ttl

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._is_fresh(entry, self._time_func()):
                self.hits += 1
                return entry.data
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return None

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = CacheEntry(data=value, stored_at=self._time_func())

    def _evict_oldest(self) -> None:
        oldest_key = min(self._entries, key=lambda k: self._entries[k].stored_at)
        del self._entries[oldest_key]
        logger.debug(f"Cache full, evicted {oldest_key}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._is_fresh(entry, self._time_func())

    def stats(self) -> Dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                'entries': len(self._entries),
                'max_entries': self.max_entries,
                'ttl': self.ttl,
                'hits': self.hits,
                'misses': self.misses,
                'hit_rate': round(self.hits / total, 3) if total else 0.0,
            }
