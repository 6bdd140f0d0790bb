"""Health and readiness endpoints.

  /health  liveness plus dependency status.  Always 200; a degraded
           dependency shows in the body, because restarting the process
           would not fix a database outage.
  /ready   503 when the durable store is configured but unreachable, so
           the load balancer stops routing batches that would all fail.
           Redis is never critical: losing it costs cache hits and
           cross-instance rate limits, not correctness.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from sqlalchemy import text

from progress_sync.core.config import SETTINGS
from progress_sync.db import engine as db_engine
from progress_sync.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.warning("Redis health check failed", exc_info=True)
        return "degraded"
    return "ok"


async def _check_database() -> str:
    if db_engine.engine is None:
        return "not_configured"
    try:
        async with db_engine.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Database health check failed", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {
        "status": overall,
        "store": SETTINGS.store_mode,
        "strict_org_context": SETTINGS.strict_org_context,
        "checks": checks,
    }


@router.get("/ready")
async def ready() -> Response:
    if await _check_database() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)
