from __future__ import annotations

import asyncio

from progress_sync.services.cache import (
    InMemoryCacheService,
    lesson_progress_key,
    user_progress_pattern,
)


def test_pattern_escapes_glob_characters() -> None:
    assert user_progress_pattern("u1") == "progress:u1:*"
    assert user_progress_pattern("a*") == r"progress:a\*:*"
    assert user_progress_pattern("q?[x]") == r"progress:q\?\[x\]:*"
    assert user_progress_pattern("back\\slash") == r"progress:back\\slash:*"


def test_wildcard_user_only_clears_its_own_reads() -> None:
    cache = InMemoryCacheService()
    mine = lesson_progress_key("a*", "course-1", ["l1"])
    theirs = lesson_progress_key("alice", "course-1", ["l1"])

    async def scenario() -> None:
        await cache.set(mine, "[]", 30)
        await cache.set(theirs, "[]", 30)
        await cache.delete_pattern(user_progress_pattern("a*"))
        assert await cache.get(mine) is None
        assert await cache.get(theirs) == "[]"

    asyncio.run(scenario())


def test_invalidation_keeps_other_users() -> None:
    cache = InMemoryCacheService()
    u1 = lesson_progress_key("u1", "course-1", ["l1", "l2"])
    u2 = lesson_progress_key("u2", "course-1", ["l1", "l2"])

    async def scenario() -> None:
        await cache.set(u1, "[]", 30)
        await cache.set(u2, "[]", 30)
        await cache.delete_pattern(user_progress_pattern("u1"))
        assert await cache.get(u1) is None
        assert await cache.get(u2) == "[]"

    asyncio.run(scenario())
