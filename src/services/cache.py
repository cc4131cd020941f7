"""TTL result cache with explicit invalidation hooks."""
from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from core.logging_config import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T")

# Signature: hook(removed_keys, reason)
InvalidationHook = Callable[[List[str], str], None]

KEY_SEPARATOR = "|"
GLOBAL_SCOPE = "*"

# Result namespaces
FUNNEL_NAMESPACE = "funnel"
METRICS_NAMESPACE = "metrics"
TIMELINE_NAMESPACE = "timeline"
ATTRIBUTION_NAMESPACE = "attribution"


@dataclass
class CacheEntry:
    """A single cache entry with TTL support."""

    value: Any
    created_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        """Check if this entry has expired."""
        return now - self.created_at > self.ttl_seconds


class ResultCache:
    """
    In-memory key/value store for derived results (funnel, metrics, attribution).

    Keys are ``namespace|lead:<id>|<param-hash>`` so entries can be dropped
    per namespace or per lead when a new event or override lands. Expiry is
    only a staleness bound; correctness comes from eager invalidation.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl_seconds: Default TTL for entries (30 minutes).
            clock: Time source in seconds, injectable for tests.
        """
        self._cache: Dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._hooks: List[InvalidationHook] = []
        self._hits = 0
        self._misses = 0
        # Bumped by every invalidation
        self._generation = 0

    @staticmethod
    def make_key(namespace: str, lead_id: Optional[str] = None, **params: Any) -> str:
        """
        Build a cache key from a namespace, an optional lead id and query parameters.

        Args:
            namespace: Result family, e.g. "funnel", "metrics", "attribution".
            lead_id: Lead the result belongs to, if any.
            **params: Query parameters (date range, model id...).

        Returns:
            Deterministic key string.
        """
        param_data = json.dumps(params, sort_keys=True, default=str)
        digest = hashlib.sha256(param_data.encode()).hexdigest()[:16]
        scope = f"lead:{lead_id}" if lead_id else GLOBAL_SCOPE
        return KEY_SEPARATOR.join((namespace, scope, digest))

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value from the cache.

        Returns:
            Cached value or None if not found/expired.
        """
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._cache[key]
                self._misses += 1
                return None

            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Set a value in the cache, using the default TTL when none is given."""
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        with self._lock:
            self._cache[key] = CacheEntry(value=value, created_at=self._clock(), ttl_seconds=ttl)

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], T],
        ttl_seconds: Optional[float] = None,
    ) -> T:
        """
        Return the cached value for key, computing and storing it on a miss.

        If an invalidation runs while ``compute`` is in progress the result is
        returned to the caller but not stored.
        """
        with self._lock:
            generation = self._generation
        cached_value = self.get(key)
        if cached_value is not None:
            LOGGER.debug(f"Cache hit for {key}")
            return cached_value

        result = compute()
        with self._lock:
            if self._generation != generation:
                LOGGER.debug(f"Not caching {key}: invalidated during compute")
                return result
            self.set(key, result, ttl_seconds)
        return result

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
        return False

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def on_invalidate(self, hook: InvalidationHook) -> None:
        """Register a callback run after every invalidation."""
        self._hooks.append(hook)

    def invalidate_prefix(self, namespace: str, reason: str = "") -> List[str]:
        """
        Drop every entry in a namespace.

        Returns:
            Keys removed.
        """
        prefix = f"{namespace}{KEY_SEPARATOR}"
        return self._invalidate(lambda key: key.startswith(prefix), reason or f"namespace {namespace}")

    def invalidate_lead(self, lead_id: str, reason: str = "") -> List[str]:
        """
        Drop every entry scoped to a lead, across namespaces.

        Returns:
            Keys removed.
        """
        marker = f"{KEY_SEPARATOR}lead:{lead_id}{KEY_SEPARATOR}"
        return self._invalidate(lambda key: marker in key, reason or f"lead {lead_id}")

    def clear(self) -> None:
        """Clear all entries from the cache."""
        self._invalidate(lambda key: True, "clear")
        with self._lock:
            self._hits = 0
            self._misses = 0

    def _invalidate(self, predicate: Callable[[str], bool], reason: str) -> List[str]:
        with self._lock:
            self._generation += 1
            removed = [key for key in self._cache if predicate(key)]
            for key in removed:
                del self._cache[key]

        if removed:
            LOGGER.debug(f"Invalidated {len(removed)} cache entries ({reason})")

        for hook in list(self._hooks):
            try:
                hook(removed, reason)
            except Exception as e:
                LOGGER.warning(f"Cache invalidation hook failed: {e}")

        return removed

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._cache[key]
        return len(expired_keys)

    @property
    def size(self) -> int:
        """Get the number of entries in the cache."""
        return len(self._cache)

    @property
    def hit_rate(self) -> float:
        """Get the cache hit rate (0.0 - 1.0)."""
        total = self._hits + self._misses
        if total == 0:
            return 0.0
        return self._hits / total

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "size": self.size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self.hit_rate, 3),
        }


__all__ = [
    "ResultCache",
    "CacheEntry",
    "InvalidationHook",
    "FUNNEL_NAMESPACE",
    "METRICS_NAMESPACE",
    "TIMELINE_NAMESPACE",
    "ATTRIBUTION_NAMESPACE",
]
