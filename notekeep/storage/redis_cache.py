from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill-then-consume over a hash {tokens, ts}.
# Returns {allowed, tokens_left, seconds_until_enough_tokens}.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local last = tonumber(state[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local wait = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(wait, 1))
  return {0, tokens, wait}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tokens, 0}
"""


def rate_key(key: str) -> str:
    """Hash the logical key so user-supplied parts cannot collide on delimiters."""
    return "notekeep:rate:" + hashlib.sha256(key.encode()).hexdigest()


def _unpack(result) -> Tuple[bool, int, int]:
    allowed, tokens, wait = result
    return bool(int(allowed)), max(0, int(float(tokens))), int(wait) if wait else 0


class RedisCache:
    """Redis-backed request throttles for the HTTP surface."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens; returns ``(allowed, remaining, retry_after)``."""
        result = await self._token_bucket(
            keys=[rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit, max(1, cost)],
        )
        return _unpack(result)

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same interface as :class:`RedisCache` over a synchronous client.

    Used in test mode where every test runs on a fresh event loop and an
    async connection pool would stay bound to the first one.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        result = self._token_bucket(
            keys=[rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit, max(1, cost)],
        )
        return _unpack(result)

    async def close(self) -> None:
        self._sync_client.close()
