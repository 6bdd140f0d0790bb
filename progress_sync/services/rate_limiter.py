"""Per-caller token bucket.

Each caller owns a bucket of ``capacity`` tokens refilled at
``refill_rate`` per second; every request spends one.  Bursts up to the
capacity pass, the long-run rate is the refill rate.  That shape fits
the outbox well: a tab coming back online flushes a few batches at once,
then settles to one batch every few seconds.

A rejected client gets ``retry_after`` seconds; the outbox's own
backoff normally lands well past it.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    retry_after: float  # seconds until the next token; 0 when allowed


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """capacity is the burst size, refill_rate the sustained tokens/second."""

    capacity: int = 60
    refill_rate: float = 1.0

    @property
    def idle_ttl_s(self) -> int:
        # A bucket untouched this long is full again and can be forgotten.
        return math.ceil(self.capacity / self.refill_rate) + 60


def take_token(
    tokens: float, elapsed: float, config: RateLimitConfig
) -> tuple[float, RateLimitResult]:
    """Refill for ``elapsed`` seconds, then try to spend one token."""
    tokens = min(config.capacity, tokens + elapsed * config.refill_rate)
    if tokens >= 1:
        tokens -= 1
        return tokens, RateLimitResult(True, int(tokens), config.capacity, 0)
    retry_after = (1 - tokens) / config.refill_rate
    return tokens, RateLimitResult(False, 0, config.capacity, retry_after)


@runtime_checkable
class RateLimiter(Protocol):
    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult: ...
    async def reset(self, key: str) -> None: ...


class InMemoryRateLimiter:
    """Single-process buckets.  Multiple workers each keep their own."""

    def __init__(self) -> None:
        # key -> (tokens, monotonic time of last update)
        self._buckets: dict[str, tuple[float, float]] = {}

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = time.monotonic()
        tokens, last = self._buckets.get(key, (float(config.capacity), now))
        tokens, result = take_token(tokens, now - last, config)
        self._buckets[key] = (tokens, now)
        return result

    async def reset(self, key: str) -> None:
        self._buckets.pop(key, None)

    def clear(self) -> None:
        self._buckets.clear()


class RedisRateLimiter:
    """Buckets in Redis hashes, shared by every API instance.

    Refill and spend must be one atomic step or two concurrent requests
    can both spend the same token, so the whole check is a Lua script.
    """

    _KEY_PREFIX = "ratelimit:"

    # KEYS[1] bucket; ARGV capacity, refill_rate, now (s), idle ttl (s)
    # returns {allowed, remaining, retry_after_ms}
    _LUA_SCRIPT = """
    local capacity = tonumber(ARGV[1])
    local rate = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])

    local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
    local tokens = tonumber(state[1]) or capacity
    local ts = tonumber(state[2]) or now

    tokens = math.min(capacity, tokens + (now - ts) * rate)
    local allowed = 0
    local retry_ms = 0
    if tokens >= 1 then
        tokens = tokens - 1
        allowed = 1
    else
        retry_ms = math.ceil((1 - tokens) / rate * 1000)
    end

    redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
    redis.call('EXPIRE', KEYS[1], ttl)
    if allowed == 1 then
        return {1, math.floor(tokens), 0}
    end
    return {0, 0, retry_ms}
    """

    def __init__(self, redis_client) -> None:
        self._redis = redis_client
        self._script = redis_client.register_script(self._LUA_SCRIPT)

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        allowed, remaining, retry_after_ms = await self._script(
            keys=[f"{self._KEY_PREFIX}{key}"],
            args=[config.capacity, config.refill_rate, time.time(), config.idle_ttl_s],
        )
        return RateLimitResult(
            allowed=bool(allowed),
            remaining=int(remaining),
            limit=config.capacity,
            retry_after=retry_after_ms / 1000,
        )

    async def reset(self, key: str) -> None:
        await self._redis.delete(f"{self._KEY_PREFIX}{key}")
