"""
Unit tests for the two-tier cache store.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.errors import ErrorKind, StorageError
from client_sync.app.caching.cache_store import CacheStore
from client_sync.app.caching.persistent import RedisPersistentTier, escape_glob
from client_sync.app.invalidation.bus import InvalidationBus, InvalidationReason, InvalidationScope
from client_sync.app.models import CacheEntry, RequestResult


def make_entry(value, fetched_at, ttl=10.0, requested_at=None):
    return CacheEntry.from_result(
        RequestResult.success(value), fetched_at=fetched_at, ttl_seconds=ttl, requested_at=requested_at
    )


class TestCacheStoreMemory:
    """Test cases for the memory tier."""

    @pytest.fixture
    def store(self, fake_clock):
        return CacheStore(clock=fake_clock)

    def test_put_and_get_fresh(self, store, fake_clock):
        """A stored entry is fresh until its TTL elapses."""
        store.put("doc:acme", make_entry("v", fake_clock()))

        assert store.is_fresh("doc:acme")
        fake_clock.advance(10.0)
        assert not store.is_fresh("doc:acme")
        assert store.get("doc:acme") is not None

    def test_invalidate_key(self, store, fake_clock):
        store.put("doc:acme", make_entry("v", fake_clock()))
        store.put("doc:acme|scope=u1", make_entry("v", fake_clock()))

        removed = store.invalidate("doc:acme")

        assert removed == 1
        assert store.get("doc:acme") is None
        assert store.is_fresh("doc:acme|scope=u1")

    def test_invalidate_resource_clears_every_qualifier(self, store, fake_clock):
        """Resource scope clears cache-busted and secret-qualified variants."""
        store.put("doc:acme", make_entry("v", fake_clock()))
        store.put("doc:acme|scope=u1|secret=abc", make_entry("v", fake_clock()))
        store.put("doc:acme2", make_entry("v", fake_clock()))

        removed = store.invalidate_scope(InvalidationScope.for_resource("doc:acme"))

        assert removed == 2
        assert store.keys() == ["doc:acme2"]

    def test_invalidate_prefix(self, store, fake_clock):
        store.put("doc:acme", make_entry("v", fake_clock()))
        store.put("doc-list|scope=u1", make_entry("v", fake_clock()))
        store.put("permissions:u1", make_entry("v", fake_clock()))

        removed = store.invalidate_scope(InvalidationScope.for_prefix("doc"))

        assert removed == 2
        assert store.keys() == ["permissions:u1"]

    def test_entry_issued_before_invalidation_is_stale_on_arrival(self, store, fake_clock):
        """A fetch issued before an invalidation cannot produce a fresh entry."""
        issued = store.generation
        store.invalidate("doc:acme")

        store.put("doc:acme", make_entry("old", fake_clock()), issued_generation=issued)

        assert store.get("doc:acme") is not None
        assert not store.is_fresh("doc:acme")

    def test_entry_issued_after_invalidation_is_fresh(self, store, fake_clock):
        store.invalidate("doc:acme")
        issued = store.generation

        store.put("doc:acme", make_entry("new", fake_clock()), issued_generation=issued)

        assert store.is_fresh("doc:acme")

    def test_bind_to_bus(self, store, fake_clock):
        """Published invalidations reach the store before publish returns."""
        bus = InvalidationBus()
        store.bind(bus)
        store.put("doc:acme", make_entry("v", fake_clock()))

        bus.publish(InvalidationScope.for_resource("doc:acme"), InvalidationReason.MUTATION)

        assert store.get("doc:acme") is None

    @pytest.mark.asyncio
    async def test_clear(self, store, fake_clock):
        store.put("doc:acme", make_entry("v", fake_clock()))
        store.put("permissions:u1", make_entry("v", fake_clock()))

        assert await store.clear() == 2
        assert store.keys() == []

    def test_prune_marks(self, store, fake_clock):
        """Marks older than every live entry and in-flight fetch are dropped."""
        store.invalidate("doc:gone")
        store.invalidate_scope(InvalidationScope.for_prefix("doc"))
        store.put("doc:acme", make_entry("v", fake_clock()), issued_generation=0)

        assert store.prune_marks(store.generation) == 0
        assert not store.is_fresh("doc:acme")

        store.invalidate("doc:acme")

        assert store.prune_marks(store.generation) == 3
        assert store.get_stats()["invalidation_marks"] == 0

    def test_prune_keeps_marks_newer_than_in_flight_fetch(self, store, fake_clock):
        store.invalidate("doc:other")
        issued = store.generation
        store.invalidate("doc:acme")

        assert store.prune_marks(issued) == 1

        store.put("doc:acme", make_entry("v", fake_clock()), issued_generation=issued)
        assert not store.is_fresh("doc:acme")

    def test_get_stats(self, store, fake_clock):
        store.put("doc:acme", make_entry("v", fake_clock()))
        store.put("doc:old", make_entry("v", fake_clock() - 20))

        stats = store.get_stats()

        assert stats["entries"] == 2
        assert stats["fresh_entries"] == 1
        assert stats["stale_entries"] == 1
        assert stats["puts"] == 2


class TestCacheStorePersistent:
    """Test cases for the persistent tier integration."""

    @pytest.fixture
    def tier(self):
        tier = AsyncMock()
        tier.read.return_value = None
        tier.delete_matching.return_value = 0
        return tier

    @pytest.fixture
    def store(self, tier, fake_clock):
        return CacheStore(persistent=tier, persistent_ttl_seconds=300, clock=fake_clock)

    @pytest.mark.asyncio
    async def test_success_is_persisted(self, store, tier, fake_clock):
        entry = make_entry({"title": "Acme"}, fake_clock())

        store.put("doc:acme", entry)
        await store.flush()

        tier.write.assert_awaited_once_with("doc:acme", entry.to_json(), 300)

    @pytest.mark.asyncio
    async def test_errors_and_zero_ttl_are_not_persisted(self, store, tier, fake_clock):
        error = CacheEntry.from_result(
            RequestResult.failure(ErrorKind.NOT_FOUND, "gone"), fetched_at=fake_clock(), ttl_seconds=30
        )
        store.put("doc:gone", error)
        store.put("doc:slow", make_entry("v", fake_clock(), ttl=0))
        await store.flush()

        tier.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unserializable_value_stays_in_memory(self, store, tier, fake_clock):
        store.put("doc:acme", make_entry(object(), fake_clock()))
        await store.flush()

        tier.write.assert_not_awaited()
        assert store.is_fresh("doc:acme")

    @pytest.mark.asyncio
    async def test_resource_invalidation_clears_persistent_variants(self, store, tier):
        store.invalidate_scope(InvalidationScope.for_resource("doc:acme"))
        await store.flush()

        tier.delete.assert_awaited_once_with("doc:acme")
        tier.delete_matching.assert_awaited_once_with("doc:acme|*")

    @pytest.mark.asyncio
    async def test_prefix_invalidation(self, store, tier):
        store.invalidate_scope(InvalidationScope.for_prefix("doc"))
        await store.flush()

        tier.delete_matching.assert_awaited_once_with("doc*")

    @pytest.mark.asyncio
    async def test_load_persistent_promotes_to_memory(self, store, tier, fake_clock):
        tier.read.return_value = make_entry({"title": "Acme"}, fake_clock() - 5).to_json()

        entry = await store.load_persistent("doc:acme")

        assert entry.value == {"title": "Acme"}
        assert store.is_fresh("doc:acme")

    @pytest.mark.asyncio
    async def test_load_persistent_rejects_expired(self, store, tier, fake_clock):
        tier.read.return_value = make_entry("v", fake_clock() - 60).to_json()

        assert await store.load_persistent("doc:acme") is None

    @pytest.mark.asyncio
    async def test_load_persistent_rejects_entries_older_than_invalidation(self, store, tier, fake_clock):
        """A persisted copy issued before an invalidation is never hydrated."""
        persisted = make_entry("old", fake_clock() - 2, requested_at=fake_clock() - 3).to_json()
        store.invalidate("doc:acme")
        await store.flush()
        tier.read.return_value = persisted

        assert await store.load_persistent("doc:acme") is None

    @pytest.mark.asyncio
    async def test_storage_errors_degrade_to_miss(self, store, tier, fake_clock):
        tier.read.side_effect = StorageError("quota exceeded")
        tier.write.side_effect = StorageError("quota exceeded")

        store.put("doc:acme", make_entry("v", fake_clock()))
        await store.flush()
        loaded = await store.load_persistent("doc:other")

        assert loaded is None
        assert store.is_fresh("doc:acme")
        assert store.get_stats()["storage_errors"] == 2

    @pytest.mark.asyncio
    async def test_slow_read_is_a_miss(self, tier, fake_clock):
        """A read slower than the read timeout is treated like a storage error."""
        async def stall(key):
            await asyncio.Event().wait()

        tier.read.side_effect = stall
        store = CacheStore(persistent=tier, read_timeout_seconds=0.05, clock=fake_clock)

        loaded = await asyncio.wait_for(store.load_persistent("doc:acme"), timeout=1.0)

        assert loaded is None
        assert store.get_stats()["storage_errors"] == 1

    @pytest.mark.asyncio
    async def test_prune_waits_for_persisted_copies_to_expire(self, store, fake_clock):
        store.invalidate("doc:acme")
        await store.flush()

        assert store.prune_marks(store.generation) == 0

        fake_clock.advance(301)
        assert store.prune_marks(store.generation) == 1

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_a_miss(self, store, tier):
        tier.read.return_value = "not json"

        assert await store.load_persistent("doc:acme") is None


async def _iterate(items):
    for item in items:
        yield item


class TestRedisPersistentTier:
    """Test cases for RedisPersistentTier."""

    @pytest.fixture
    def redis_client(self):
        client = AsyncMock()
        client.scan_iter = MagicMock(return_value=_iterate(["sync:doc:acme|a", "sync:doc:acme|b"]))
        return client

    @pytest.fixture
    def tier(self, redis_client):
        return RedisPersistentTier("redis://localhost:6379/0", key_prefix="sync", client=redis_client)

    @pytest.mark.asyncio
    async def test_write_uses_setex(self, tier, redis_client):
        await tier.write("doc:acme", "{}", 300)

        redis_client.setex.assert_awaited_once_with("sync:doc:acme", 300, "{}")

    @pytest.mark.asyncio
    async def test_read_decodes_bytes(self, tier, redis_client):
        redis_client.get.return_value = b'{"a": 1}'

        assert await tier.read("doc:acme") == '{"a": 1}'
        redis_client.get.assert_awaited_once_with("sync:doc:acme")

    @pytest.mark.asyncio
    async def test_delete_matching(self, tier, redis_client):
        count = await tier.delete_matching("doc:acme|*")

        assert count == 2
        redis_client.scan_iter.assert_called_once_with(match="sync:doc:acme|*")
        redis_client.delete.assert_awaited_once_with("sync:doc:acme|a", "sync:doc:acme|b")

    @pytest.mark.asyncio
    async def test_errors_are_wrapped(self, tier, redis_client):
        redis_client.get.side_effect = ConnectionError("down")

        with pytest.raises(StorageError):
            await tier.read("doc:acme")

    @pytest.mark.asyncio
    async def test_not_started(self):
        tier = RedisPersistentTier("redis://localhost:6379/0")

        with pytest.raises(StorageError):
            await tier.write("doc:acme", "{}", 10)

    def test_escape_glob(self):
        assert escape_glob("doc:a*b?[c]") == "doc:a\\*b\\?\\[c\\]"
