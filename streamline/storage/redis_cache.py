from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper for shared rate-limit counters and password reset tokens."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: INCR, arm the expiry on the first hit of a window.
    # A counter left without a TTL (crash between calls) is re-armed.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    RATE_PREFIX = "rate:"
    RESET_PREFIX = "auth:password_reset:"

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @classmethod
    def _normalize_rate_key(cls, key: str) -> str:
        # Keys embed emails and addresses; only their digest reaches Redis
        return cls.RATE_PREFIX + hashlib.sha256(key.encode()).hexdigest()

    def verify_connection(self) -> None:
        """Ping with a short-lived sync client so the async client stays loop-free."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_fixed_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Count one hit; return ``(count, milliseconds until the window resets)``."""
        count, ttl = await self._fixed_window(
            keys=[self._normalize_rate_key(key)], args=[int(window_ms)]
        )
        return int(count), int(ttl)

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def clear_rate_limits(self) -> int:
        removed = 0
        async for redis_key in self.client.scan_iter(match=f"{self.RATE_PREFIX}*"):
            removed += await self.client.delete(redis_key)
        return removed

    async def set_password_reset(self, token_hash: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"{self.RESET_PREFIX}{token_hash}", user_id, ex=max(1, ttl_seconds))

    async def pop_password_reset(self, token_hash: str) -> Optional[str]:
        """Fetch and delete in one step so a reset token works once."""
        return await self.client.getdel(f"{self.RESET_PREFIX}{token_hash}")

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Same surface as RedisCache, backed by a sync client so pytest's
    per-test event loops never bind a connection pool.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    RATE_PREFIX = RedisCache.RATE_PREFIX
    RESET_PREFIX = RedisCache.RESET_PREFIX

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def incr_fixed_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        count, ttl = self._fixed_window(
            keys=[RedisCache._normalize_rate_key(key)], args=[int(window_ms)]
        )
        return int(count), int(ttl)

    async def reset_rate_limit(self, key: str) -> None:
        self._sync_client.delete(RedisCache._normalize_rate_key(key))

    async def clear_rate_limits(self) -> int:
        removed = 0
        for redis_key in self._sync_client.scan_iter(match=f"{self.RATE_PREFIX}*"):
            removed += self._sync_client.delete(redis_key)
        return removed

    async def set_password_reset(self, token_hash: str, user_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(f"{self.RESET_PREFIX}{token_hash}", user_id, ex=max(1, ttl_seconds))

    async def pop_password_reset(self, token_hash: str) -> Optional[str]:
        return self._sync_client.getdel(f"{self.RESET_PREFIX}{token_hash}")

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def close(self) -> None:
        self._sync_client.close()
