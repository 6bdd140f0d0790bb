"""Progress ingestion and reconciliation reads.

  POST /progress/batch          outbox flushes land here
  GET  /progress/lessons        per-lesson rows a device reconciles from
  GET  /progress/course/{id}    the course-level record

Batch responses are always 200 with a per-id classification; only a
batch that cannot be processed at all (empty, oversized, no tenant in
strict mode) gets an error status.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, TypeAdapter

from progress_sync.api.dependencies import (
    get_progress_store,
    require_user,
    resolve_target_user,
)
from progress_sync.api.ratelimit import READ_LIMIT, require_rate_limit
from progress_sync.core.config import SETTINGS
from progress_sync.core.metrics import CACHE_OPERATIONS
from progress_sync.models.principal import Principal
from progress_sync.models.progress import (
    BatchResultOut,
    CourseProgressOut,
    LessonProgressEntry,
)
from progress_sync.repos.progress_repo import ProgressStore
from progress_sync.services import cache as cache_module
from progress_sync.services.cache import LESSON_PROGRESS_TTL_S, lesson_progress_key
from progress_sync.services.ingestion import (
    BatchTooLargeError,
    IngestionError,
    MissingOrgContextError,
    ingest_progress,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/progress", tags=["progress"])

MAX_LESSON_IDS = 100

_entries = TypeAdapter(list[LessonProgressEntry])


class BatchIn(BaseModel):
    # Entries stay untyped here; each one is validated on its own so one
    # bad entry cannot fail its neighbours.
    events: list[Any] | None = None


def batch_http_error(exc: IngestionError) -> HTTPException:
    if isinstance(exc, MissingOrgContextError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, BatchTooLargeError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(exc), "max": exc.limit},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post(
    "/batch",
    response_model=BatchResultOut,
    dependencies=[Depends(require_rate_limit("ingest"))],
)
async def submit_progress_batch(
    body: BatchIn,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
) -> BatchResultOut:
    try:
        result = await ingest_progress(
            body.events or [],
            principal,
            store,
            cache_module.cache_service,
            strict_org=SETTINGS.strict_org_context,
        )
    except IngestionError as exc:
        raise batch_http_error(exc) from None
    return BatchResultOut.from_result(result)


def _parse_lesson_ids(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return list(dict.fromkeys(part.strip() for part in raw.split(",") if part.strip()))


@router.get(
    "/lessons",
    response_model=list[LessonProgressEntry],
    dependencies=[Depends(require_rate_limit("read", READ_LIMIT))],
)
async def list_lesson_progress(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
    course_id: Annotated[str | None, Query()] = None,
    lesson_ids: Annotated[str | None, Query(description="comma-separated")] = None,
    user_id: Annotated[str | None, Query()] = None,
) -> list[LessonProgressEntry]:
    """One row per requested lesson, zeroed where nothing was recorded.

    Read-through cached per (user, course, lesson set); ingestion for the
    user invalidates every entry.
    """
    if not course_id:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="course_id is required")
    ids = _parse_lesson_ids(lesson_ids)
    if not ids:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="lesson_ids is required")
    if len(ids) > MAX_LESSON_IDS:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail=f"at most {MAX_LESSON_IDS} lesson_ids per request",
        )
    target = resolve_target_user(principal, user_id)

    cache = cache_module.cache_service
    key = lesson_progress_key(target, course_id, ids)
    cached = await cache.get(key)
    if cached is not None:
        CACHE_OPERATIONS.labels(operation="hit").inc()
        return _entries.validate_json(cached)

    CACHE_OPERATIONS.labels(operation="miss").inc()
    rows = await store.get_lesson_progress(target, ids)
    await cache.set(key, _entries.dump_json(rows).decode(), LESSON_PROGRESS_TTL_S)
    return rows


@router.get(
    "/course/{course_id}",
    response_model=CourseProgressOut,
    dependencies=[Depends(require_rate_limit("read", READ_LIMIT))],
)
async def get_course_progress(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
    user_id: Annotated[str | None, Query()] = None,
) -> CourseProgressOut:
    target = resolve_target_user(principal, user_id)
    record = await store.get_course_progress(target, course_id)
    if record is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="No progress for this course")
    return CourseProgressOut.from_record(record)
