from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

CONNECT_TIMEOUT_SECONDS = 5.0

# KEYS[1] bucket hash; ARGV: now, refill per second, capacity, cost.
# Returns {allowed, level, seconds_until_cost_available}.
BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'stamp')
local level = tonumber(state[1]) or capacity
local stamp = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - stamp) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', bucket, 'level', level, 'stamp', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate)))
return {allowed, tostring(level), wait}
"""


def bucket_key(subject: str) -> str:
    """Redis key for a limiter subject; the subject itself (an email or IP) is hashed away."""
    return "learnhub:bucket:" + hashlib.sha256(subject.encode()).hexdigest()


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _to_result(raw, return_remaining: bool) -> RateLimitResult:
    allowed, level, wait = raw
    allowed = bool(int(allowed))
    if not return_remaining:
        return allowed
    return allowed, max(0, int(float(level))), int(wait or 0)


class RedisCache:
    """Async Redis client running the per-subject token bucket."""

    def __init__(self, redis_url: str, *, socket_timeout: float = CONNECT_TIMEOUT_SECONDS):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(BUCKET_LUA)

    def verify_connection(self) -> None:
        # Pinged with a throwaway sync client; the async one must not bind to the startup loop
        checker = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            checker.ping()
        finally:
            checker.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._bucket(
            keys=[bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _to_result(raw, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking variant used under TestClient, where each request may run on a new loop."""

    def __init__(self, redis_url: str, *, socket_timeout: float = CONNECT_TIMEOUT_SECONDS):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(keys=[bucket_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _to_result(raw, return_remaining)

    async def close(self) -> None:
        self.client.close()


Cache = Optional[Union[RedisCache, SyncRedisCache]]
