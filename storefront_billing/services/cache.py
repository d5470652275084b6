"""Process-local read-through cache for subscription reads.

The cache is advisory: every reader falls back to the data store on a miss.
Instances are constructed and owned by the subscription service; nothing here
is module-global.
"""

import threading
import time
from collections.abc import Callable
from typing import Any, Generic, Optional, TypeVar

from storefront_billing.logging_config import get_logger
from storefront_billing.metrics import BillingMetrics

logger = get_logger(__name__)

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_SIZE = 1000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0
OVERFLOW_FACTOR = 1.2


class _Entry(Generic[V]):
    __slots__ = ("value", "expires_at")

    def __init__(self, value: V, expires_at: float):
        self.value = value
        self.expires_at = expires_at


class TTLCache(Generic[V]):
    """In-memory TTL cache with a bounded entry count.

    Cleanup is lazy. It runs on access once ``cleanup_interval`` seconds have
    passed since the previous run, or when the cache holds more than 120% of
    ``max_size`` entries, and when a new key is added to a full cache. It drops
    expired entries first, then the entries closest to expiry until the cache
    is back under ``max_size``.

    Args:
        name: Label used in logs and metrics
        ttl: Default time-to-live in seconds
        max_size: Entry bound
        cleanup_interval: Seconds between lazy cleanups
        clock: Monotonic time source in seconds
        metrics: Optional metrics sink
    """

    def __init__(
        self,
        name: str = "default",
        ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[BillingMetrics] = None,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.name = name
        self._ttl = ttl
        self._max_size = max_size
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._metrics = metrics
        self._entries: dict[str, _Entry[V]] = {}
        self._lock = threading.RLock()
        self._last_cleanup = clock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[V]:
        """Cached value, or None when absent or expired."""
        with self._lock:
            self._maybe_cleanup()
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                entry = None

            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
            self._report(hit=entry is not None)
            return entry.value if entry is not None else None

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                self.cleanup(target_size=self._max_size - 1)
            self._entries[key] = _Entry(value, self._clock() + (self._ttl if ttl is None else ttl))
            self._maybe_cleanup()

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_by_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``; returns the number removed."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def _maybe_cleanup(self) -> None:
        now = self._clock()
        if (
            now - self._last_cleanup > self._cleanup_interval
            or len(self._entries) > self._max_size * OVERFLOW_FACTOR
        ):
            self.cleanup()

    def cleanup(self, target_size: Optional[int] = None) -> int:
        """Drop expired entries, then soonest-to-expire ones until within the bound."""
        target = self._max_size if target_size is None else target_size
        with self._lock:
            now = self._clock()
            before = len(self._entries)
            for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
                del self._entries[key]

            if len(self._entries) > target:
                by_expiry = sorted(self._entries, key=lambda k: self._entries[k].expires_at)
                excess = len(self._entries) - target
                for key in by_expiry[:excess]:
                    del self._entries[key]

            self._last_cleanup = now
            removed = before - len(self._entries)
            if removed:
                logger.debug("cache_cleanup", cache=self.name, removed=removed, size=len(self._entries))
            return removed

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "size": len(self._entries),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self.hit_rate, 4),
            }

    def _report(self, hit: bool) -> None:
        if self._metrics is None:
            return
        self._metrics.record_cache_lookup(self.name, hit)
        self._metrics.record_cache_state(self.name, len(self._entries), self.hit_rate)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __repr__(self) -> str:
        return f"TTLCache(name={self.name!r}, size={len(self._entries)}, max_size={self._max_size})"


class SubscriptionCacheManager:
    """Subscription-aware key layout on top of ``TTLCache``.

    Each cached subscription is stored under two index keys (by store id and by
    subscription id) that are always written together, plus one key per
    feature-gate answer. Invalidating a subscription drops all of them.
    """

    def __init__(self, cache: TTLCache):
        self._cache = cache

    @staticmethod
    def store_key(store_id: str) -> str:
        return f"subscription:store:{store_id}"

    @staticmethod
    def id_key(subscription_id: str) -> str:
        return f"subscription:id:{subscription_id}"

    @staticmethod
    def feature_prefix(subscription_id: str) -> str:
        return f"feature:{subscription_id}:"

    @classmethod
    def feature_key(cls, subscription_id: str, feature: str) -> str:
        return f"{cls.feature_prefix(subscription_id)}{feature}"

    @property
    def cache(self) -> TTLCache:
        return self._cache

    def get_by_store(self, store_id: str) -> Optional[Any]:
        return self._cache.get(self.store_key(store_id))

    def get_by_id(self, subscription_id: str) -> Optional[Any]:
        return self._cache.get(self.id_key(subscription_id))

    def put(self, store_id: str, subscription_id: str, value: Any) -> None:
        """Write both index keys."""
        self._cache.set(self.store_key(store_id), value)
        self._cache.set(self.id_key(subscription_id), value)

    def get_feature(self, subscription_id: str, feature: str) -> Optional[bool]:
        return self._cache.get(self.feature_key(subscription_id, feature))

    def put_feature(self, subscription_id: str, feature: str, available: bool) -> None:
        self._cache.set(self.feature_key(subscription_id, feature), available)

    def invalidate(self, subscription_id: str, store_id: Optional[str] = None) -> None:
        """Drop both indexes and every feature key of a subscription."""
        if store_id is None:
            cached = self._cache.get(self.id_key(subscription_id))
            store_id = getattr(cached, "store_id", None)
        self._cache.delete(self.id_key(subscription_id))
        if store_id:
            self._cache.delete(self.store_key(store_id))
        removed = self._cache.delete_by_prefix(self.feature_prefix(subscription_id))
        logger.debug(
            "subscription_cache_invalidated",
            subscription_id=subscription_id,
            store_id=store_id,
            feature_keys=removed,
        )

    def invalidate_store(self, store_id: str) -> None:
        cached = self._cache.get(self.store_key(store_id))
        self._cache.delete(self.store_key(store_id))
        subscription_id = getattr(cached, "id", None)
        if subscription_id:
            self.invalidate(subscription_id, store_id)

    def clear(self) -> None:
        self._cache.clear()
