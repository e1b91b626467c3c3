"""
Bounded in-process embedding cache
Keyed by a hash of the preprocessed text; evicts the oldest half when full
"""

import hashlib
import threading
from typing import Dict, List, Optional

import structlog

logger = structlog.get_logger()


def cache_key(text: str) -> str:
    """Stable key for preprocessed text"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """
    Insertion-ordered map from text hash to vector.

    Reads are lock-free dict lookups. Writes and eviction take a lock.
    Losing an entry only costs a provider call, never correctness.
    Per-instance only: processes do not share entries.
    """

    def __init__(self, max_entries: int = 1000):
        if max_entries < 2:
            raise ValueError("max_entries must be at least 2")

        self.max_entries = max_entries
        self._entries: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[List[float]]:
        vector = self._entries.get(key)
        if vector is None:
            self.misses += 1
            return None
        self.hits += 1
        # Copy so callers cannot mutate the cached vector
        return list(vector)

    def set(self, key: str, vector: List[float]) -> None:
        with self._lock:
            self._entries[key] = list(vector)
            if len(self._entries) > self.max_entries:
                self._evict_oldest_half()

    def _evict_oldest_half(self) -> None:
        evict_count = self.max_entries // 2
        for key in list(self._entries)[:evict_count]:
            del self._entries[key]
        self.evictions += evict_count

        logger.debug(
            "cache.evicted",
            evicted=evict_count,
            remaining=len(self._entries),
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def stats(self) -> Dict[str, int]:
        return {
            "cache_size": len(self._entries),
            "cache_capacity": self.max_entries,
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "cache_evictions": self.evictions,
        }
