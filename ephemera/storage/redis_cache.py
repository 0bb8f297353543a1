from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume; returns {allowed, tokens_left, seconds_until_allowed}
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _normalize_rate_key(key: str) -> str:
    """Hash the subject so user-controlled parts cannot collide across limits."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _sweep_lock_key(name: str) -> str:
    return f"lock:sweep:{name}"


def _unpack(raw, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, reset_after = raw
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(float(tokens))), int(reset_after) if reset_after else 0)
    return allowed_bool


class RedisCache:
    """Redis-backed rate limits and the cross-worker sweep lock.

    Nothing about token validity lives here; sessions and token versions are
    always read from the primary store.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        raw = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(raw, return_remaining)

    async def acquire_sweep_lock(self, name: str, ttl_seconds: int) -> bool:
        """Claim the periodic sweep for this interval; False when another worker holds it."""
        return bool(
            await self.client.set(_sweep_lock_key(name), "1", nx=True, ex=max(1, ttl_seconds))
        )

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as ``RedisCache`` backed by a synchronous client.

    Used under TEST_MODE so a client is never bound to one pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        raw = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(raw, return_remaining)

    async def acquire_sweep_lock(self, name: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(_sweep_lock_key(name), "1", nx=True, ex=max(1, ttl_seconds))
        )

    async def close(self) -> None:
        self._sync_client.close()


def mask_url_password(url: Optional[str]) -> str:
    """Replace the password component of a connection URL for logging."""
    if not url:
        return ""
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    creds, _, host = rest.rpartition("@")
    if ":" in creds:
        user = creds.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"
    return url
