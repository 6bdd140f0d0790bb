from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from progress_sync.api.analytics import router as analytics_router
from progress_sync.api.health import router as health_router
from progress_sync.api.metrics_endpoint import router as metrics_router
from progress_sync.api.progress import router as progress_router
from progress_sync.core.config import SETTINGS
from progress_sync.core.logging import setup_logging
from progress_sync.db.engine import lifespan_db
from progress_sync.db.redis import lifespan_redis
from progress_sync.middleware.metrics import MetricsMiddleware
from progress_sync.middleware.request_context import (
    RequestContextMiddleware,
    install_request_context_filter,
)

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
install_request_context_filter()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Teardown runs in reverse order.
    async with lifespan_db():
        async with lifespan_redis():
            yield


app = FastAPI(
    title="progress-sync",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

# Last added runs first: RequestContext -> Metrics -> CORS -> route.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(progress_router)
app.include_router(analytics_router)

logger.info(
    "progress-sync started  env=%s store=%s strict_org=%s port=%d",
    SETTINGS.app_env,
    SETTINGS.store_mode,
    SETTINGS.strict_org_context,
    SETTINGS.port,
)
