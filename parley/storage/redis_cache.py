from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding per-thread run admission slots."""

    # Compare-and-delete so a slot is only released by the run that holds it
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)
        # Connectivity probe runs before an event loop exists
        self._probe_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _run_key(thread_id: str) -> str:
        return f"run:thread:{thread_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._probe_client.ping()

    async def close(self) -> None:
        await self.client.aclose()
        self._probe_client.close()

    async def acquire_run_slot(self, thread_id: str, run_id: str, ttl_seconds: int) -> bool:
        """Claim the single run slot for a thread; False if another run holds it."""
        acquired = await self.client.set(
            self._run_key(thread_id), run_id, nx=True, ex=max(ttl_seconds, 1)
        )
        return bool(acquired)

    async def release_run_slot(self, thread_id: str, run_id: str) -> bool:
        released = await self._release(keys=[self._run_key(thread_id)], args=[run_id])
        return bool(released)

    async def get_run_holder(self, thread_id: str) -> Optional[str]:
        return await self.client.get(self._run_key(thread_id))


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client so pytest's per-test event loops never bind the
    connection pool, but exposes the same coroutine methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(RedisCache._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()

    async def acquire_run_slot(self, thread_id: str, run_id: str, ttl_seconds: int) -> bool:
        acquired = self.client.set(
            RedisCache._run_key(thread_id), run_id, nx=True, ex=max(ttl_seconds, 1)
        )
        return bool(acquired)

    async def release_run_slot(self, thread_id: str, run_id: str) -> bool:
        released = self._release(keys=[RedisCache._run_key(thread_id)], args=[run_id])
        return bool(released)

    async def get_run_holder(self, thread_id: str) -> Optional[str]:
        return self.client.get(RedisCache._run_key(thread_id))
