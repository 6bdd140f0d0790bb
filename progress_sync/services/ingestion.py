"""Batch ingestion: turn a submitted ``events`` array into store writes.

For every entry, in order:

1. validate its shape (``invalid`` if it has an id, silently skipped if not)
2. check identity: ``userId`` defaults to the caller and may only name
   someone else when the caller is a platform admin (``user_mismatch``)
3. resolve the tenant: the event's ``orgId``, else the caller's org claim;
   an event org that differs from the caller's is ``org_mismatch``
4. build the domain event (``missing_target`` if it lacks lesson/course)

Events with no resolvable org never reach the store.  With strict org
context (the default) one such event rejects the whole call before any
write; otherwise each one is reported as ``missing_org``.

Everything that survives goes to the store in one call, which sorts it
into accepted and duplicates.  The store commits before the caller's
cached reads are cleared.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import BaseModel, ValidationError

from progress_sync.core.metrics import (
    CACHE_OPERATIONS,
    INGEST_BATCH_SIZE,
    PROGRESS_EVENTS,
    TENANT_REJECTIONS,
)
from progress_sync.models.events import AnalyticsEventIn, ProgressEventIn
from progress_sync.models.principal import Principal
from progress_sync.models.progress import BatchResult, FailedEvent
from progress_sync.repos.progress_repo import ProgressStore
from progress_sync.services.cache import CacheService, user_progress_pattern

logger = logging.getLogger(__name__)

PROGRESS_BATCH_LIMIT = 25
ANALYTICS_BATCH_LIMIT = 50


class IngestionError(Exception):
    """A whole batch was refused; nothing was written."""


class EmptyBatchError(IngestionError):
    def __init__(self) -> None:
        super().__init__("events array is required")


class BatchTooLargeError(IngestionError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__("too_many_events")
        self.size = size
        self.limit = limit


class MissingOrgContextError(IngestionError):
    def __init__(self, event_ids: list[str]) -> None:
        super().__init__("organization context required")
        self.event_ids = event_ids


async def ingest_progress(
    raw_events: Sequence[Any],
    principal: Principal,
    store: ProgressStore,
    cache: CacheService,
    *,
    strict_org: bool,
) -> BatchResult:
    return await _ingest(
        raw_events,
        principal,
        ProgressEventIn,
        PROGRESS_BATCH_LIMIT,
        "progress",
        store.record_events,
        store.commit,
        cache,
        strict_org=strict_org,
    )


async def ingest_analytics(
    raw_events: Sequence[Any],
    principal: Principal,
    store: ProgressStore,
    cache: CacheService,
    *,
    strict_org: bool,
) -> BatchResult:
    return await _ingest(
        raw_events,
        principal,
        AnalyticsEventIn,
        ANALYTICS_BATCH_LIMIT,
        "analytics",
        store.record_analytics,
        store.commit,
        cache,
        strict_org=strict_org,
    )


def check_batch_size(raw_events: Sequence[Any] | None, limit: int) -> None:
    if not raw_events:
        raise EmptyBatchError()
    if len(raw_events) > limit:
        raise BatchTooLargeError(len(raw_events), limit)


def _event_id_of(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    value = raw.get("clientEventId") or raw.get("client_event_id")
    return value if isinstance(value, str) and value else None


async def _ingest(
    raw_events: Sequence[Any],
    principal: Principal,
    model: type[BaseModel],
    limit: int,
    event_class: str,
    record: Callable[[list[Any]], Awaitable[BatchResult]],
    commit: Callable[[], Awaitable[None]],
    cache: CacheService,
    *,
    strict_org: bool,
) -> BatchResult:
    check_batch_size(raw_events, limit)
    INGEST_BATCH_SIZE.labels(event_class=event_class).observe(len(raw_events))

    result = BatchResult()
    ready: list[Any] = []
    missing_org: list[str] = []

    for raw in raw_events:
        try:
            parsed = model.model_validate(raw)
        except ValidationError as exc:
            event_id = _event_id_of(raw)
            if event_id is None:
                logger.debug("Skipping %s entry without an id", event_class)
                continue
            logger.info("Invalid %s event %s: %d errors", event_class, event_id, exc.error_count())
            result.failed.append(FailedEvent(id=event_id, reason="invalid"))
            continue

        event_id = parsed.client_event_id
        user_id = parsed.user_id or principal.user_id
        if user_id != principal.user_id and not principal.is_platform_admin():
            result.failed.append(FailedEvent(id=event_id, reason="user_mismatch"))
            continue

        org_id = parsed.org_id or principal.org_id
        if org_id is None:
            missing_org.append(event_id)
            continue
        if (
            principal.org_id is not None
            and org_id != principal.org_id
            and not principal.is_platform_admin()
        ):
            result.failed.append(FailedEvent(id=event_id, reason="org_mismatch"))
            continue

        try:
            ready.append(parsed.to_domain(user_id=user_id, org_id=org_id))
        except ValueError:
            result.failed.append(FailedEvent(id=event_id, reason="missing_target"))

    if missing_org:
        if strict_org:
            TENANT_REJECTIONS.labels(event_class=event_class).inc()
            logger.warning(
                "Rejected %s batch: %d events without organization context",
                event_class,
                len(missing_org),
                extra={"event_class": event_class, "user_id": principal.user_id},
            )
            raise MissingOrgContextError(missing_org)
        result.failed.extend(FailedEvent(id=i, reason="missing_org") for i in missing_org)

    if ready:
        result.merge(await record(ready))
        # Readers must not refill the cache from uncommitted rows.
        await commit()

    if result.accepted:
        accepted = set(result.accepted)
        for user_id in {e.user_id for e in ready if e.client_event_id in accepted}:
            if user_id:
                await cache.delete_pattern(user_progress_pattern(user_id))
                CACHE_OPERATIONS.labels(operation="invalidate").inc()

    PROGRESS_EVENTS.labels(event_class=event_class, result="accepted").inc(len(result.accepted))
    PROGRESS_EVENTS.labels(event_class=event_class, result="duplicate").inc(len(result.duplicates))
    PROGRESS_EVENTS.labels(event_class=event_class, result="failed").inc(len(result.failed))

    logger.info(
        "Ingested %s batch: accepted=%d duplicates=%d failed=%d",
        event_class,
        len(result.accepted),
        len(result.duplicates),
        len(result.failed),
        extra={
            "event_class": event_class,
            "batch_size": len(raw_events),
            "user_id": principal.user_id,
            "org_id": principal.org_id,
        },
    )
    return result
