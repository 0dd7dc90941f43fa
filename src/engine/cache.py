"""
Query execution cache.

Bounded in-memory cache for query results, keyed by the fully resolved
QueryModel (after predicate splicing, predicates and value lists sorted) plus
account id, so equivalent filter sets built through different code paths
share one entry.

Eviction is least-recently-used at capacity; independently each entry
expires after its TTL.  TTL depends on the data class: topology-shaped
lookups (``entity``) live longer than live metrics (``metric``).

Expired and evicted entries move to a bounded stale area that only
``get_stale`` reads, so a failed upstream call can fall back to the last
known payload flagged as stale.

There is no single-flight de-duplication: concurrent misses on the same key
each execute and each ``set``.  The engine runs on one cooperative event
loop, so the cache takes no lock.
"""
from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from src.core.config import get_settings
from src.core.logging import get_logger
from src.query.model import QueryModel

logger = get_logger(__name__)


# ── Cache entry ─────────────────────────────────────────


@dataclass
class CacheEntry:
    """A single cached result."""
    key: str
    payload: Any
    created_at: float
    ttl: float
    data_class: str = "metric"
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return (now - self.created_at) >= self.ttl


def make_key(model: QueryModel, account_id: str | int) -> str:
    """Deterministic cache key for a resolved query.

    The model's time window is part of its rendering, so it is part of the key.
    """
    return text_key(model.canonical().to_nrql(), account_id)


def text_key(query: str, account_id: str | int) -> str:
    """Cache key for an already canonical query string."""
    raw = f"{account_id}|{query}"
    return hashlib.sha256(raw.encode()).hexdigest()


# ── Cache implementation ────────────────────────────────


class QueryCache:
    """LRU + TTL cache for query results.

    Parameters
    ----------
    max_size : int
        Maximum number of live entries; the least recently used is evicted.
    ttls : dict[str, float]
        TTL in seconds per data class (``entity``, ``metric``).
    clock : callable
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_size: int | None = None,
        ttls: dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self._max_size = max_size if max_size is not None else settings.cache_max_size
        self._ttls = ttls or {
            "entity": settings.entity_cache_ttl_seconds,
            "metric": settings.metric_cache_ttl_seconds,
        }
        self._clock = clock
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stale: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # ── Public API ──────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the cached payload, or ``None`` on miss / expiry."""
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self._clock()):
            self._retire(key)
            self._misses += 1
            logger.debug("Cache EXPIRED key=%s", key[:16])
            return None
        self._store.move_to_end(key)
        entry.hit_count += 1
        self._hits += 1
        logger.debug("Cache HIT key=%s hits=%d", key[:16], entry.hit_count)
        return entry.payload

    def set(
        self,
        key: str,
        payload: Any,
        ttl: float | None = None,
        data_class: str = "metric",
    ) -> None:
        """Store a payload; *ttl* defaults to the data class TTL."""
        if ttl is None:
            ttl = self.ttl_for(data_class)
        if key in self._store:
            del self._store[key]
        elif len(self._store) >= self._max_size:
            self._evict_lru()
        self._stale.pop(key, None)
        self._store[key] = CacheEntry(
            key=key, payload=payload, created_at=self._clock(), ttl=ttl, data_class=data_class,
        )
        logger.debug("Cache SET key=%s class=%s ttl=%.0fs size=%d",
                     key[:16], data_class, ttl, len(self._store))

    def get_stale(self, key: str) -> Any | None:
        """Last known payload for *key*, expired or not; ``None`` if never cached."""
        entry = self._store.get(key) or self._stale.get(key)
        return entry.payload if entry is not None else None

    def ttl_for(self, data_class: str) -> float:
        return self._ttls.get(data_class, self._ttls.get("metric", 60.0))

    def invalidate(self, key: str | None = None) -> int:
        """Remove one entry or flush all. Returns number of entries removed."""
        if key is None:
            count = len(self._store)
            self._store.clear()
            self._stale.clear()
            return count
        self._stale.pop(key, None)
        if key in self._store:
            del self._store[key]
            return 1
        return 0

    def cleanup_expired(self) -> int:
        """Retire all expired entries. Returns count removed."""
        now = self._clock()
        expired = [k for k, v in self._store.items() if v.is_expired(now)]
        for k in expired:
            self._retire(k)
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        total = self._hits + self._misses
        return {
            "size": len(self._store),
            "stale_size": len(self._stale),
            "max_size": self._max_size,
            "ttl_seconds": dict(self._ttls),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
        }

    # ── Internals ───────────────────────────────────────

    def _retire(self, key: str) -> None:
        """Move a live entry to the stale area."""
        entry = self._store.pop(key)
        self._stale[key] = entry
        self._stale.move_to_end(key)
        while len(self._stale) > self._max_size:
            self._stale.popitem(last=False)

    def _evict_lru(self) -> None:
        """Remove the least recently used live entry."""
        if not self._store:
            return
        lru_key = next(iter(self._store))
        self._retire(lru_key)
        self._evictions += 1
        logger.debug("Cache EVICT key=%s", lru_key[:16])
