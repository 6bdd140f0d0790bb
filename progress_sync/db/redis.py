"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured a connection pool is
created at import time; when it is None, the read cache and the rate
limiter use in-memory implementations and no Redis server is needed.

Redis holds only state that is fine to lose: cached reconciliation
reads (rebuilt from Postgres on the next miss) and rate-limit buckets.
Idempotency never lives here; the processed-events ledger is in the
same Postgres transaction as the progress rows it guards.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from progress_sync.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Verify connectivity on startup, release the pool on shutdown.

    A failed ping is logged, not raised: the service still starts and
    the next Redis call will surface the error where it happens.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured; cache and rate limiter are in-memory")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis connected")
    except Exception:
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
