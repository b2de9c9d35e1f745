from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for per-user login locks and the revoked-token denylist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete the lock only if this caller still owns it
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)

    @staticmethod
    def _lock_key(user_id: str) -> str:
        return f"auth:user_lock:{user_id}"

    @staticmethod
    def _revoked_key(token_id: str) -> str:
        return f"auth:token:revoked:{token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def acquire_user_lock(self, user_id: str, owner: str, ttl_seconds: int) -> bool:
        """Try to take the cross-process login lock for ``user_id``.

        The lock expires on its own after ``ttl_seconds`` so a crashed holder
        cannot wedge logins for that user.
        """
        acquired = await self.client.set(
            self._lock_key(user_id), owner, nx=True, ex=max(1, ttl_seconds)
        )
        return bool(acquired)

    async def release_user_lock(self, user_id: str, owner: str) -> bool:
        released = await self._release_lock(keys=[self._lock_key(user_id)], args=[owner])
        return bool(int(released or 0))

    async def mark_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self._revoked_key(token_id), "1", ex=ttl_seconds)

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(await self.client.exists(self._revoked_key(token_id)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable methods as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(
            RedisCache._RELEASE_LOCK_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def acquire_user_lock(self, user_id: str, owner: str, ttl_seconds: int) -> bool:
        acquired = self.client.set(
            RedisCache._lock_key(user_id), owner, nx=True, ex=max(1, ttl_seconds)
        )
        return bool(acquired)

    async def release_user_lock(self, user_id: str, owner: str) -> bool:
        released = self._release_lock(keys=[RedisCache._lock_key(user_id)], args=[owner])
        return bool(int(released or 0))

    async def mark_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(RedisCache._revoked_key(token_id), "1", ex=ttl_seconds)

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(self.client.exists(RedisCache._revoked_key(token_id)))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()


CacheBackend = Optional[RedisCache | SyncRedisCache]
