from __future__ import annotations

import time
import uuid
from typing import Any, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis

from studiogate.storage.cache import RateLimitDecision, SessionCache, rate_limit_key

# Sliding-window log: one sorted-set member per counted request, scored by
# its epoch-ms timestamp. Trim, count, and conditionally add in one call.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local reset_at = now + window
  if oldest[2] then
    reset_at = tonumber(oldest[2]) + window
  end
  return {0, 0, reset_at}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, limit - count - 1, tonumber(oldest[2]) + window}
"""


def _decision(result: Sequence[Any]) -> RateLimitDecision:
    allowed, remaining, reset_at = result
    return RateLimitDecision(
        allowed=bool(int(allowed)),
        remaining=max(0, int(remaining)),
        reset_at_ms=int(reset_at),
    )


class RedisCache(SessionCache):
    """Thin Redis wrapper for session entries and the OTP rate limiter."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        return bool(await self.client.setex(key, ttl_seconds, value))

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def consume_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        now_ms = int(time.time() * 1000)
        result = await self._sliding_window(
            keys=[rate_limit_key(key)],
            args=[now_ms, int(window_seconds) * 1000, int(limit), f"{now_ms}-{uuid.uuid4().hex}"],
        )
        return _decision(result)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache(SessionCache):
    """Redis wrapper over a synchronous client, for test runs.

    Exposes the same awaitable interface as ``RedisCache`` without binding a
    connection pool to whichever event loop first touched it, which matters
    when ``TestClient`` and ``asyncio.run`` tests share one runtime.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        return bool(self.client.setex(key, ttl_seconds, value))

    async def delete(self, key: str) -> int:
        return int(self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def ttl(self, key: str) -> int:
        return int(self.client.ttl(key))

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def consume_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        now_ms = int(time.time() * 1000)
        result = self._sliding_window(
            keys=[rate_limit_key(key)],
            args=[now_ms, int(window_seconds) * 1000, int(limit), f"{now_ms}-{uuid.uuid4().hex}"],
        )
        return _decision(result)

    async def close(self) -> None:
        self.client.close()
