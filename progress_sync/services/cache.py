"""Read-through cache for reconciliation reads.

``GET /progress/lessons`` is what every device calls when it opens a
course, often several times in a row.  The flow:

    request -> cache hit  -> return
            -> cache miss -> store -> populate cache -> return

Two invalidation strategies cover each other:

  1. TTL: every entry expires after ``LESSON_PROGRESS_TTL_S``.  Even a
     missed invalidation only serves stale rows for that long.
  2. Explicit: ingestion deletes every cached read for the user it
     just wrote for (``progress:{user_id}:*``).
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from progress_sync.db.redis import redis_pool

LESSON_PROGRESS_TTL_S = 30

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")
_GLOB_ESCAPE = re.compile(r"\\(.)")


def lesson_progress_key(user_id: str, course_id: str, lesson_ids: Sequence[str]) -> str:
    # Lesson sets can be long; hash them so keys stay short.
    digest = hashlib.sha1(",".join(lesson_ids).encode()).hexdigest()[:16]
    return f"progress:{user_id}:{course_id}:{digest}"


def user_progress_pattern(user_id: str) -> str:
    # User ids come from token claims; a stray `*` must not widen the match.
    escaped = _GLOB_SPECIAL.sub(r"\\\1", user_id)
    return f"progress:{escaped}:*"


def _pattern_prefix(pattern: str) -> str:
    return _GLOB_ESCAPE.sub(r"\1", pattern.removesuffix("*"))


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> None:
        """Delete all keys matching a trailing-``*`` glob."""
        ...


class InMemoryCacheService:
    """In-memory cache for dev and tests; no TTL enforcement.

    The autouse fixture in conftest.py clears the store between tests.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        prefix = _pattern_prefix(pattern)
        for key in [k for k in self._store if k.startswith(prefix)]:
            del self._store[key]

    def clear(self) -> None:
        self._store.clear()


class RedisCacheService:
    """Redis-backed cache, shared across API instances."""

    _PREFIX = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")

    async def delete_pattern(self, pattern: str) -> None:
        # SCAN, not KEYS: KEYS blocks the server for the whole keyspace walk.
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(
                cursor, match=f"{self._PREFIX}{pattern}", count=100
            )
            if keys:
                await self._redis.delete(*keys)
            if cursor == 0:
                break


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
