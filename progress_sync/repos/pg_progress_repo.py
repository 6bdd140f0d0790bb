"""PostgreSQL implementation of ProgressStore.

One ``PgProgressStore`` wraps one session, and the whole batch is one
transaction.  Ingestion commits it through ``commit()`` before clearing
the read cache; otherwise the caller's ``session_scope()`` does.  Within
the transaction each event gets a SAVEPOINT holding two statements:

1. ``INSERT INTO processed_events ... ON CONFLICT DO NOTHING RETURNING``
   claims the id.  No row back means another request already applied it.
2. ``INSERT ... ON CONFLICT DO UPDATE`` merges into lesson_progress or
   course_progress.

If step 2 fails the savepoint rolls back step 1 as well, so the id is
released and the client's retry can land.  Two workers racing on the
same id serialize on the ledger's primary key; the loser sees a
duplicate.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import assert_never

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from progress_sync.db.tables import (
    AnalyticsEventRow,
    CourseProgressRow,
    LessonProgressRow,
    ProcessedEventRow,
)
from progress_sync.models.events import (
    AnalyticsEvent,
    CourseCompleted,
    CourseEvent,
    CourseProgress,
    LessonCompleted,
    LessonEvent,
    LessonProgress,
    ProgressEvent,
    clamp_percent,
)
from progress_sync.models.progress import (
    BatchResult,
    CourseProgressRecord,
    FailedEvent,
    LessonProgressEntry,
)

logger = logging.getLogger(__name__)


class PgProgressStore:
    """Satisfies the ProgressStore Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_events(self, events: Sequence[ProgressEvent]) -> BatchResult:
        result = BatchResult()
        for event in events:
            await self._record_one(event, "progress", result)
        return result

    async def record_analytics(self, events: Sequence[AnalyticsEvent]) -> BatchResult:
        result = BatchResult()
        for event in events:
            await self._record_one(event, "analytics", result)
        return result

    async def get_lesson_progress(
        self, user_id: str, lesson_ids: Sequence[str]
    ) -> list[LessonProgressEntry]:
        if not lesson_ids:
            return []
        stmt = select(LessonProgressRow).where(
            LessonProgressRow.user_id == user_id,
            LessonProgressRow.lesson_id.in_(list(lesson_ids)),
        )
        rows = {
            row.lesson_id: row
            for row in (await self._session.execute(stmt)).scalars().all()
        }
        return [
            _row_to_entry(rows[lesson_id])
            if lesson_id in rows
            else LessonProgressEntry.empty(lesson_id)
            for lesson_id in lesson_ids
        ]

    async def get_course_progress(
        self, user_id: str, course_id: str
    ) -> CourseProgressRecord | None:
        stmt = select(CourseProgressRow).where(
            CourseProgressRow.user_id == user_id,
            CourseProgressRow.course_id == course_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_course(row)

    async def commit(self) -> None:
        """Commit early so readers see the batch before caches are cleared."""
        await self._session.commit()

    # ------------------------------------------------------------------

    async def _record_one(
        self,
        event: ProgressEvent | AnalyticsEvent,
        event_class: str,
        result: BatchResult,
    ) -> None:
        event_id = event.client_event_id
        try:
            async with self._session.begin_nested():
                if not await self._claim(event, event_class):
                    result.duplicates.append(event_id)
                    return
                if isinstance(event, AnalyticsEvent):
                    await self._insert_analytics(event)
                else:
                    await self._apply(event, datetime.now(UTC))
        except SQLAlchemyError:
            logger.exception("Failed to apply event %s", event_id)
            result.failed.append(FailedEvent(id=event_id, reason="exception"))
            return
        result.accepted.append(event_id)

    async def _claim(self, event: ProgressEvent | AnalyticsEvent, event_class: str) -> bool:
        stmt = (
            pg_insert(ProcessedEventRow)
            .values(
                client_event_id=event.client_event_id,
                event_class=event_class,
                user_id=event.user_id or "",
                org_id=event.org_id,
            )
            .on_conflict_do_nothing(index_elements=["client_event_id"])
            .returning(ProcessedEventRow.client_event_id)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def _apply(self, event: ProgressEvent, now: datetime) -> None:
        match event:
            case LessonProgress() | LessonCompleted():
                await self._upsert_lesson(event, now)
            case CourseProgress() | CourseCompleted():
                await self._upsert_course(event, now)
            case _:
                assert_never(event)

    async def _upsert_lesson(self, event: LessonEvent, now: datetime) -> None:
        stmt = pg_insert(LessonProgressRow).values(
            user_id=event.user_id,
            lesson_id=event.lesson_id,
            course_id=event.course_id,
            org_id=event.org_id,
            progress_percentage=clamp_percent(event.percent),
            completed=isinstance(event, LessonCompleted),
            position_seconds=max(0.0, event.position or 0.0),
            time_spent=event.time_spent_seconds or 0.0,
            last_accessed_at=now,
        )
        excluded = stmt.excluded
        updates = {
            "course_id": excluded.course_id,
            "org_id": func.coalesce(excluded.org_id, LessonProgressRow.org_id),
            # completed never goes back to false
            "completed": or_(LessonProgressRow.completed, excluded.completed),
            "last_accessed_at": excluded.last_accessed_at,
        }
        if event.percent is not None:
            updates["progress_percentage"] = excluded.progress_percentage
        if event.position is not None:
            updates["position_seconds"] = excluded.position_seconds
        if event.time_spent_seconds is not None:
            updates["time_spent"] = excluded.time_spent
        await self._session.execute(
            stmt.on_conflict_do_update(
                index_elements=["user_id", "lesson_id"], set_=updates
            )
        )

    async def _upsert_course(self, event: CourseEvent, now: datetime) -> None:
        completing = isinstance(event, CourseCompleted) or (
            event.percent is not None and clamp_percent(event.percent) >= 100
        )
        if isinstance(event, CourseCompleted):
            status = "completed"
        else:
            status = event.status or "in_progress"
        stmt = pg_insert(CourseProgressRow).values(
            user_id=event.user_id,
            course_id=event.course_id,
            org_id=event.org_id,
            status=status,
            percent=clamp_percent(event.percent),
            last_lesson_id=event.lesson_id,
            time_spent_seconds=event.time_spent_seconds,
            completed_at=now if completing else None,
            updated_at=now,
        )
        excluded = stmt.excluded
        updates = {
            "org_id": func.coalesce(excluded.org_id, CourseProgressRow.org_id),
            "updated_at": excluded.updated_at,
        }
        if isinstance(event, CourseCompleted) or event.status:
            updates["status"] = excluded.status
        if event.percent is not None:
            updates["percent"] = excluded.percent
        if event.lesson_id is not None:
            updates["last_lesson_id"] = excluded.last_lesson_id
        if event.time_spent_seconds is not None:
            updates["time_spent_seconds"] = excluded.time_spent_seconds
        if completing:
            updates["completed_at"] = excluded.completed_at
        await self._session.execute(
            stmt.on_conflict_do_update(
                index_elements=["user_id", "course_id"], set_=updates
            )
        )

    async def _insert_analytics(self, event: AnalyticsEvent) -> None:
        stmt = (
            pg_insert(AnalyticsEventRow)
            .values(
                client_event_id=event.client_event_id,
                type=event.type,
                user_id=event.user_id,
                course_id=event.course_id,
                org_id=event.org_id,
                data=event.data,
                occurred_at=event.timestamp,
            )
            .on_conflict_do_nothing(index_elements=["client_event_id"])
        )
        await self._session.execute(stmt)


def _row_to_entry(row: LessonProgressRow) -> LessonProgressEntry:
    return LessonProgressEntry(
        lesson_id=row.lesson_id,
        progress_percentage=row.progress_percentage,
        completed=row.completed,
        time_spent=row.time_spent,
        last_accessed_at=row.last_accessed_at,
    )


def _row_to_course(row: CourseProgressRow) -> CourseProgressRecord:
    return CourseProgressRecord(
        user_id=row.user_id,
        course_id=row.course_id,
        org_id=row.org_id,
        status=row.status,
        percent=row.percent,
        last_lesson_id=row.last_lesson_id,
        time_spent_seconds=row.time_spent_seconds,
        completed_at=row.completed_at,
        updated_at=row.updated_at,
    )
