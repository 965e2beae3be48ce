"""
Embedding cache keyed by (normalized text, model version).

Writes are idempotent upserts: two writers computing the same key store
equivalent vectors, so a plain mutex around the dictionary is all the
coordination needed. Entries never expire on time; an optional capacity
turns on least-recently-used eviction.
"""

import hashlib
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, Optional, Sequence

from util.logging import logger

from .errors import CacheCorruption
from .models import CacheEntry


def cache_key(normalized_text: str, model_version: str) -> str:
    """Stable hash of the normalized text and the model version."""
    digest = hashlib.sha256()
    digest.update(model_version.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(normalized_text.encode("utf-8"))
    return digest.hexdigest()


class EmbeddingCache:
    """Shared read-mostly vector cache with hit/miss accounting."""

    def __init__(self, max_entries: int = 0, price_per_1k_tokens: float = 0.00002):
        self.max_entries = max_entries
        self.price_per_1k_tokens = price_per_1k_tokens
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._corruptions = 0
        self._saved_tokens = 0

    def get(self, key: str, expected_dim: Optional[int] = None) -> Optional[list]:
        """Return the cached vector or None on a miss.

        A corrupt entry (unreadable or wrong dimensionality) is removed and
        reported as a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            try:
                self._check(entry, expected_dim)
            except CacheCorruption as e:
                del self._entries[key]
                self._corruptions += 1
                self._misses += 1
                logger.log_operation("cache.corruption", "evicted", {"key": key[:16], "reason": str(e)})
                return None

            entry.hit_count += 1
            self._hits += 1
            self._saved_tokens += entry.token_estimate
            self._entries.move_to_end(key)
            return list(entry.vector)

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Entry lookup without touching statistics or recency."""
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, vector: Sequence[float], model_version: str, token_estimate: int = 0) -> None:
        """Idempotent upsert; an existing entry is left untouched."""
        values = [float(v) for v in vector]
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return

            self._entries[key] = CacheEntry(
                key=key,
                vector=values,
                model_version=model_version,
                token_estimate=token_estimate,
            )
            if self.max_entries and len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted LRU cache entry {evicted_key[:16]}...")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_model_versions(self, keep: Iterable[str]) -> int:
        """Remove entries whose model version is not in ``keep``."""
        keep = set(keep)
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.model_version not in keep]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": (self._hits / total) if total else 0.0,
                "estimated_savings": self._saved_tokens / 1000.0 * self.price_per_1k_tokens,
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "evictions": self._evictions,
                "corruptions": self._corruptions,
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str):
        with self._lock:
            return key in self._entries

    @staticmethod
    def _check(entry: CacheEntry, expected_dim: Optional[int]) -> None:
        vector = entry.vector
        if not isinstance(vector, list) or not vector:
            raise CacheCorruption("unreadable vector")
        if expected_dim is not None and len(vector) != expected_dim:
            raise CacheCorruption(f"dimension {len(vector)} != {expected_dim}")
        for value in vector:
            if not isinstance(value, float) or value != value:
                raise CacheCorruption("non-numeric component")

