"""Per-conversation run admission, in-process and Redis-backed."""

import asyncio

from parley.service.chat import LocalRunSlots
from parley.storage.redis_cache import RedisCache, SyncRedisCache


class FakeRedis:
    """Just enough of the redis client for SET NX and the release script."""

    def __init__(self):
        self.values = {}
        self.expiries = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.expiries[key] = ex
        return True

    def get(self, key):
        return self.values.get(key)

    def release(self, keys, args):
        key = keys[0]
        if self.values.get(key) == args[0]:
            del self.values[key]
            return 1
        return 0


def make_sync_cache():
    fake = FakeRedis()
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://unused"
    cache.client = fake
    cache._release = fake.release
    return cache, fake


class TestLocalRunSlots:
    async def test_single_holder(self):
        slots = LocalRunSlots()
        assert await slots.acquire_run_slot("c1", "run-a", 600)
        assert not await slots.acquire_run_slot("c1", "run-b", 600)
        assert await slots.acquire_run_slot("c2", "run-b", 600)
        assert await slots.get_run_holder("c1") == "run-a"

    async def test_only_holder_releases(self):
        slots = LocalRunSlots()
        await slots.acquire_run_slot("c1", "run-a", 600)
        assert not await slots.release_run_slot("c1", "run-b")
        assert await slots.release_run_slot("c1", "run-a")
        assert await slots.acquire_run_slot("c1", "run-b", 600)

    async def test_concurrent_acquire_admits_one(self):
        slots = LocalRunSlots()
        results = await asyncio.gather(
            *(slots.acquire_run_slot("c1", f"run-{i}", 600) for i in range(10))
        )
        assert results.count(True) == 1

    async def test_slot_expires_after_ttl(self):
        now = {"t": 100.0}
        slots = LocalRunSlots(clock=lambda: now["t"])
        assert await slots.acquire_run_slot("c1", "run-a", 30)

        now["t"] = 129.0
        assert not await slots.acquire_run_slot("c1", "run-b", 30)

        now["t"] = 130.0
        assert await slots.get_run_holder("c1") is None
        assert await slots.acquire_run_slot("c1", "run-b", 30)
        assert not await slots.release_run_slot("c1", "run-a")
        assert await slots.get_run_holder("c1") == "run-b"


class TestRedisRunSlots:
    def test_key_layout(self):
        assert RedisCache._run_key("c1") == "run:thread:c1"

    async def test_acquire_sets_expiry(self):
        cache, fake = make_sync_cache()
        assert await cache.acquire_run_slot("c1", "run-a", 30)
        assert fake.expiries["run:thread:c1"] == 30
        assert not await cache.acquire_run_slot("c1", "run-b", 30)
        assert await cache.get_run_holder("c1") == "run-a"

    async def test_compare_and_delete_release(self):
        cache, _ = make_sync_cache()
        await cache.acquire_run_slot("c1", "run-a", 30)
        assert not await cache.release_run_slot("c1", "run-b")
        assert await cache.release_run_slot("c1", "run-a")
        assert await cache.get_run_holder("c1") is None
