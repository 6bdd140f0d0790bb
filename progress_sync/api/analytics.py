"""Analytics ingestion: POST /analytics/batch.

Same contract as /progress/batch with a larger cap.  Analytics ids share
the progress idempotency ledger, so an id can only ever be applied once
across both endpoints.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from progress_sync.api.dependencies import get_progress_store, require_user
from progress_sync.api.progress import BatchIn, batch_http_error
from progress_sync.api.ratelimit import require_rate_limit
from progress_sync.core.config import SETTINGS
from progress_sync.models.principal import Principal
from progress_sync.models.progress import BatchResultOut
from progress_sync.repos.progress_repo import ProgressStore
from progress_sync.services import cache as cache_module
from progress_sync.services.ingestion import IngestionError, ingest_analytics

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.post(
    "/batch",
    response_model=BatchResultOut,
    dependencies=[Depends(require_rate_limit("analytics"))],
)
async def submit_analytics_batch(
    body: BatchIn,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
) -> BatchResultOut:
    try:
        result = await ingest_analytics(
            body.events or [],
            principal,
            store,
            cache_module.cache_service,
            strict_org=SETTINGS.strict_org_context,
        )
    except IngestionError as exc:
        raise batch_http_error(exc) from None
    return BatchResultOut.from_result(result)
