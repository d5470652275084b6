"""Tests for the TTL cache and the subscription key layout."""

import pytest

from storefront_billing.services.cache import SubscriptionCacheManager, TTLCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(name="test", ttl=60, max_size=3, cleanup_interval=600, clock=clock)


class TestTTLCache:
    """Test expiry, bounds and statistics."""

    def test_get_returns_value_before_expiry(self, cache, clock):
        cache.set("a", 1)
        clock.advance(59)
        assert cache.get("a") == 1

    def test_entry_expires_at_ttl(self, cache, clock):
        cache.set("a", 1)
        clock.advance(60)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self, cache, clock):
        cache.set("short", 1, ttl=5)
        cache.set("long", 2)
        clock.advance(10)
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_full_cache_evicts_soonest_to_expire(self, cache, clock):
        cache.set("a", 1, ttl=10)
        cache.set("b", 2, ttl=30)
        cache.set("c", 3, ttl=20)

        cache.set("d", 4)

        assert len(cache) == 3
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("d") == 4

    def test_overwriting_existing_key_does_not_evict(self, cache):
        for key in "abc":
            cache.set(key, key)
        cache.set("a", "again")
        assert len(cache) == 3
        assert cache.get("b") == "b"

    def test_cleanup_removes_expired_first(self, cache, clock):
        cache.set("old", 1, ttl=1)
        cache.set("new", 2)
        clock.advance(2)

        assert cache.cleanup() == 1
        assert len(cache) == 1

    def test_delete_by_prefix(self, cache):
        cache.set("feature:s1:a", True)
        cache.set("feature:s1:b", False)
        cache.set("feature:s2:a", True)

        assert cache.delete_by_prefix("feature:s1:") == 2
        assert cache.get("feature:s2:a") is True

    def test_hit_rate(self, cache):
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        assert cache.hit_rate == 0.5
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_clear_resets_stats(self, cache):
        cache.set("a", 1)
        cache.get("a")
        cache.clear()
        assert len(cache) == 0
        assert cache.hit_rate == 0.0

    def test_max_size_must_be_positive(self):
        with pytest.raises(ValueError):
            TTLCache(max_size=0)

    def test_lookups_are_counted(self, clock, metrics):
        cache = TTLCache(name="subs", clock=clock, metrics=metrics)
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")

        registry = metrics.registry
        assert registry.get_sample_value("subscription_cache_requests_total", {"cache": "subs", "result": "hit"}) == 1.0
        assert registry.get_sample_value("subscription_cache_requests_total", {"cache": "subs", "result": "miss"}) == 1.0
        assert registry.get_sample_value("subscription_cache_size", {"cache": "subs"}) == 1.0


class TestSubscriptionCacheManager:
    """Test the two-index layout and invalidation."""

    @pytest.fixture
    def manager(self, clock):
        return SubscriptionCacheManager(TTLCache(clock=clock))

    def test_put_writes_both_indexes(self, manager):
        manager.put("store-1", "sub-1", "details")
        assert manager.get_by_store("store-1") == "details"
        assert manager.get_by_id("sub-1") == "details"

    def test_invalidate_drops_indexes_and_features(self, manager):
        manager.put("store-1", "sub-1", "details")
        manager.put_feature("sub-1", "analytics", True)
        manager.put_feature("sub-2", "analytics", True)

        manager.invalidate("sub-1", "store-1")

        assert manager.get_by_store("store-1") is None
        assert manager.get_by_id("sub-1") is None
        assert manager.get_feature("sub-1", "analytics") is None
        assert manager.get_feature("sub-2", "analytics") is True

    def test_feature_key_layout(self, manager):
        manager.put_feature("sub-1", "api_access", True)

        assert SubscriptionCacheManager.feature_key("sub-1", "api_access") == "feature:sub-1:api_access"
        assert manager.cache.get("feature:sub-1:api_access") is True

    def test_invalidate_does_not_touch_longer_ids(self, manager):
        manager.put_feature("sub-1", "analytics", True)
        manager.put_feature("sub-10", "analytics", True)

        manager.invalidate("sub-1")

        assert manager.get_feature("sub-10", "analytics") is True

    def test_invalidate_store_finds_subscription(self, manager):
        class Cached:
            id = "sub-1"
            store_id = "store-1"

        manager.put("store-1", "sub-1", Cached())
        manager.put_feature("sub-1", "api_access", False)

        manager.invalidate_store("store-1")

        assert manager.get_by_id("sub-1") is None
        assert manager.get_feature("sub-1", "api_access") is None

    def test_cached_false_feature_is_returned(self, manager):
        manager.put_feature("sub-1", "erp_integration", False)
        assert manager.get_feature("sub-1", "erp_integration") is False
