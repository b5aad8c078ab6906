"""
Bounded, time-expiring cache of query embeddings.

Avoids a provider round-trip when the same question (or variant) is asked
again. Recency order lives in an OrderedDict: a hit moves the entry to the
most-recent end and eviction pops from the oldest end, both O(1).
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from rag_api.logging_config import get_logger
from retrieval.errors import EmbeddingProviderError, RetrievalError
from retrieval.providers import EmbeddingProvider

logger = get_logger(__name__)

# Keys are the query text truncated to this many characters
MAX_KEY_LENGTH = 4096


def normalize_key(text) -> str:
    return str(text or "")[:MAX_KEY_LENGTH]


@dataclass
class _Entry:
    vector: list[float]
    last_access: float


class EmbeddingCache:
    """
    LRU + TTL cache mapping query text to its embedding vector.

    Guarantees, under concurrent use:
    - size never exceeds capacity once set() returns
    - get() never returns an entry older than ttl_seconds since its last access
    """

    def __init__(
        self,
        capacity: int = 200,
        ttl_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, text) -> list[float] | None:
        key = normalize_key(text)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if now - entry.last_access > self.ttl_seconds:
                # Expired entries are evicted eagerly and count as a miss
                del self._entries[key]
                self.misses += 1
                return None
            entry.last_access = now
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.vector

    def set(self, text, vector: list[float]) -> None:
        key = normalize_key(text)
        with self._lock:
            self._entries[key] = _Entry(vector=list(vector), last_access=self._clock())
            self._entries.move_to_end(key)
            if len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        """Keys from oldest to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "size": len(self),
            "capacity": self.capacity,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }


class CachedEmbedder:
    """
    Embedding provider front-end backed by an EmbeddingCache.

    A miss triggers exactly one provider call. The vector is stored only once
    the call has fully returned, so a cancelled or failed call never leaves a
    partial entry behind.
    """

    def __init__(self, provider: EmbeddingProvider, cache: EmbeddingCache):
        self.provider = provider
        self.cache = cache

    async def embed(self, text: str) -> list[float]:
        key = normalize_key(text)
        hit = self.cache.get(key)
        if hit is not None:
            return hit

        try:
            vector = await self.provider.embed(key)
        except RetrievalError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(f"Embedding provider failed: {type(e).__name__}: {e}") from e

        vector = [float(x) for x in vector]
        self.cache.set(key, vector)
        return vector
