"""Rate limiting dependency for FastAPI routes.

A dependency rather than middleware so each route picks its own budget
and /health, /ready and /metrics stay unlimited.  Buckets are keyed by
the authenticated user: learners behind one school NAT share an IP but
not a budget.

X-RateLimit-* headers are attached to every limited response, not only
429s, so clients can see their remaining quota.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Response, status

from progress_sync.api.dependencies import require_user
from progress_sync.core.metrics import RATE_LIMIT_HITS
from progress_sync.db.redis import redis_pool
from progress_sync.models.principal import Principal
from progress_sync.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimiter,
    RedisRateLimiter,
)

logger = logging.getLogger(__name__)

if redis_pool is not None:
    rate_limiter: RateLimiter = RedisRateLimiter(redis_pool)
else:
    rate_limiter = InMemoryRateLimiter()

# One outbox flush every few seconds per queue, plus reconciliation reads
# when a course opens.
INGEST_LIMIT = RateLimitConfig(capacity=60, refill_rate=1.0)
READ_LIMIT = RateLimitConfig(capacity=120, refill_rate=2.0)


def require_rate_limit(bucket: str, config: RateLimitConfig = INGEST_LIMIT):
    """Dependency factory: enforce a per-user token bucket on a route.

    Usage::

        @router.post("/progress/batch", dependencies=[Depends(require_rate_limit("ingest"))])
    """

    async def _check(
        response: Response,
        principal: Annotated[Principal, Depends(require_user)],
    ) -> None:
        key = f"user:{principal.user_id}:{bucket}"
        result = await rate_limiter.check(key, config)
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
        }
        if not result.allowed:
            RATE_LIMIT_HITS.labels(key_type="user").inc()
            logger.warning("Rate limit exceeded key=%s", key)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(int(result.retry_after) + 1), **headers},
            )
        response.headers.update(headers)

    return _check
