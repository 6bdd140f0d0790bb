"""Progress store: idempotent application of events, plus the read side.

Two implementations satisfy ``ProgressStore``:

- ``InMemoryProgressStore`` (here): dicts in one process.  Idempotency
  and merge state vanish on restart and are not shared between
  workers, so it is for dev, tests and single-process demos only.
- ``PgProgressStore`` (pg_progress_repo.py): PostgreSQL, where the
  processed-events ledger and the upserts commit together.

Merge rules are the same in both:

- an event id seen before is a duplicate and changes nothing
- fields an event carries overwrite the stored value, fields it omits
  keep the stored value (last arrival wins, not last timestamp)
- ``completed`` only ever goes false -> true, and only via
  ``lesson_completed``
- a lesson's percent is *not* monotonic: a ``lesson_progress`` at 40
  after completion stores 40 and leaves ``completed`` true
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol, assert_never

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
    LessonProgressRecord,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProgressStore(Protocol):
    async def record_events(self, events: Sequence[ProgressEvent]) -> BatchResult: ...
    async def record_analytics(self, events: Sequence[AnalyticsEvent]) -> BatchResult: ...
    async def get_lesson_progress(
        self, user_id: str, lesson_ids: Sequence[str]
    ) -> list[LessonProgressEntry]: ...
    async def get_course_progress(
        self, user_id: str, course_id: str
    ) -> CourseProgressRecord | None: ...
    async def commit(self) -> None: ...


def merge_lesson(
    existing: LessonProgressRecord | None, event: LessonEvent, now: datetime
) -> LessonProgressRecord:
    record = existing or LessonProgressRecord(
        user_id=event.user_id,
        lesson_id=event.lesson_id or "",
        course_id=event.course_id or "",
    )
    record.course_id = event.course_id or record.course_id
    record.org_id = event.org_id or record.org_id
    if event.percent is not None:
        record.progress_percentage = clamp_percent(event.percent)
    if isinstance(event, LessonCompleted):
        record.completed = True
    if event.position is not None:
        record.position_seconds = max(0.0, event.position)
    if event.time_spent_seconds is not None:
        record.time_spent = event.time_spent_seconds
    record.last_accessed_at = now
    return record


def merge_course(
    existing: CourseProgressRecord | None, event: CourseEvent, now: datetime
) -> CourseProgressRecord:
    record = existing or CourseProgressRecord(
        user_id=event.user_id, course_id=event.course_id or ""
    )
    record.org_id = event.org_id or record.org_id
    if event.percent is not None:
        record.percent = clamp_percent(event.percent)
    if isinstance(event, CourseCompleted):
        record.status = "completed"
    elif event.status:
        record.status = event.status
    if event.lesson_id is not None:
        record.last_lesson_id = event.lesson_id
    if event.time_spent_seconds is not None:
        record.time_spent_seconds = event.time_spent_seconds
    if isinstance(event, CourseCompleted) or (
        event.percent is not None and clamp_percent(event.percent) >= 100
    ):
        record.completed_at = now
    record.updated_at = now
    return record


class InMemoryProgressStore:
    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        # Shared by progress and analytics events: one id, one update.
        self._processed: set[str] = set()
        self._lessons: dict[tuple[str, str], LessonProgressRecord] = {}
        self._courses: dict[tuple[str, str], CourseProgressRecord] = {}
        self._analytics: list[AnalyticsEvent] = []

    async def record_events(self, events: Sequence[ProgressEvent]) -> BatchResult:
        return self._record(events, self._apply)

    async def record_analytics(self, events: Sequence[AnalyticsEvent]) -> BatchResult:
        return self._record(events, self._analytics.append)

    async def get_lesson_progress(
        self, user_id: str, lesson_ids: Sequence[str]
    ) -> list[LessonProgressEntry]:
        rows: list[LessonProgressEntry] = []
        for lesson_id in lesson_ids:
            record = self._lessons.get((user_id, lesson_id))
            if record is None:
                rows.append(LessonProgressEntry.empty(lesson_id))
            else:
                rows.append(LessonProgressEntry.from_record(record))
        return rows

    async def get_course_progress(
        self, user_id: str, course_id: str
    ) -> CourseProgressRecord | None:
        return self._courses.get((user_id, course_id))

    async def commit(self) -> None:
        """Writes are visible as soon as they are applied."""

    @property
    def analytics_events(self) -> list[AnalyticsEvent]:
        return list(self._analytics)

    def _record(self, events, apply) -> BatchResult:
        result = BatchResult()
        for event in events:
            event_id = event.client_event_id
            if event_id in self._processed:
                result.duplicates.append(event_id)
                continue
            self._processed.add(event_id)
            try:
                apply(event)
            except Exception:
                logger.exception("Failed to apply event %s", event_id)
                # Release the id so a retry of the same event can land.
                self._processed.discard(event_id)
                result.failed.append(FailedEvent(id=event_id, reason="exception"))
                continue
            result.accepted.append(event_id)
        return result

    def _apply(self, event: ProgressEvent) -> None:
        now = self._clock()
        match event:
            case LessonProgress() | LessonCompleted():
                key = (event.user_id, event.lesson_id or "")
                self._lessons[key] = merge_lesson(self._lessons.get(key), event, now)
            case CourseProgress() | CourseCompleted():
                key = (event.user_id, event.course_id or "")
                self._courses[key] = merge_course(self._courses.get(key), event, now)
            case _:
                assert_never(event)
