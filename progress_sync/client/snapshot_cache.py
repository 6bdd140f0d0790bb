"""Local snapshot cache: what a device shows before the network answers.

The device keeps one snapshot per course under a single storage key,
``lms_course_progress_v1``, as a JSON map ``courseId -> snapshot``.

``write()`` persists locally first and only then, when a sync context
and an outbox are configured, turns the snapshot into outbox events.
A write never raises; losing a local write is logged, not fatal.

``reconcile()`` asks the server what it has, and the server wins: the
local entry is overwritten with fresh rows, not merged.  Events still sitting in the
outbox are not folded in, so a reconciliation that runs before they
flush shows older numbers until the next one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from progress_sync.client.outbox import Outbox
from progress_sync.client.storage import KeyValueStorage
from progress_sync.client.transport import (
    NoSessionError,
    NotAuthorizedError,
    RateLimitedError,
)
from progress_sync.models.events import now_ms
from progress_sync.models.progress import LessonProgressEntry

logger = logging.getLogger(__name__)

PROGRESS_STORAGE_KEY = "lms_course_progress_v1"
REMOTE_SYNC_TTL_S = 45.0
MAX_CONCURRENT_SYNCS = 2
LESSON_IDS_PER_REQUEST = 25
CHUNK_PAUSE_S = 0.05


@dataclass(slots=True)
class LocalSnapshot:
    completed_lesson_ids: list[str] = field(default_factory=list)
    lesson_progress: dict[str, float] = field(default_factory=dict)
    lesson_positions: dict[str, float] = field(default_factory=dict)
    last_lesson_id: str | None = None

    def is_completed(self, lesson_id: str) -> bool:
        return lesson_id in self.completed_lesson_ids

    def copy(self) -> LocalSnapshot:
        return LocalSnapshot(
            completed_lesson_ids=list(self.completed_lesson_ids),
            lesson_progress=dict(self.lesson_progress),
            lesson_positions=dict(self.lesson_positions),
            last_lesson_id=self.last_lesson_id,
        )

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "completedLessonIds": list(dict.fromkeys(self.completed_lesson_ids)),
            "lessonProgress": self.lesson_progress,
            "lessonPositions": self.lesson_positions,
        }
        if self.last_lesson_id is not None:
            data["lastLessonId"] = self.last_lesson_id
        return data

    @classmethod
    def from_json(cls, data: Any) -> LocalSnapshot:
        if not isinstance(data, dict):
            return cls()
        completed = data.get("completedLessonIds")
        return cls(
            completed_lesson_ids=list(completed) if isinstance(completed, list) else [],
            lesson_progress=dict(data.get("lessonProgress") or {}),
            lesson_positions=dict(data.get("lessonPositions") or {}),
            last_lesson_id=data.get("lastLessonId"),
        )


@dataclass(frozen=True, slots=True)
class SyncContext:
    user_id: str
    course_id: str
    lesson_ids: tuple[str, ...]
    org_id: str | None = None


@dataclass(frozen=True, slots=True)
class LessonSnapshotInput:
    lesson_id: str
    progress_percent: float
    completed: bool
    position_seconds: float


@dataclass(frozen=True, slots=True)
class ProgressSnapshotInput:
    user_id: str
    course_id: str
    lessons: tuple[LessonSnapshotInput, ...]
    overall_percent: float
    completed_at: datetime | None
    total_time_seconds: int
    last_lesson_id: str | None


def build_snapshot_input(
    snapshot: LocalSnapshot, context: SyncContext, now: datetime | None = None
) -> ProgressSnapshotInput:
    """Derive what a snapshot means for the server.

    Overall percent is the share of the course's lessons that are
    completed.  Only lessons with some progress are included, so a device
    that never opened a lesson does not push zeros over another device's
    progress.
    """
    lessons: list[LessonSnapshotInput] = []
    for lesson_id in context.lesson_ids:
        completed = snapshot.is_completed(lesson_id)
        percent = snapshot.lesson_progress.get(lesson_id, 100 if completed else 0)
        lessons.append(
            LessonSnapshotInput(
                lesson_id=lesson_id,
                progress_percent=percent,
                completed=completed or percent >= 100,
                position_seconds=snapshot.lesson_positions.get(lesson_id, 0),
            )
        )

    completed_count = sum(1 for lesson in lessons if lesson.completed)
    overall = completed_count / len(context.lesson_ids) * 100 if context.lesson_ids else 0
    total_time = sum(max(0, round(v or 0)) for v in snapshot.lesson_positions.values())

    return ProgressSnapshotInput(
        user_id=context.user_id,
        course_id=context.course_id,
        lessons=tuple(
            lesson
            for lesson in lessons
            if lesson.progress_percent > 0 or lesson.position_seconds > 0 or lesson.completed
        ),
        overall_percent=overall,
        completed_at=(now or datetime.now(UTC)) if overall >= 100 else None,
        total_time_seconds=total_time,
        last_lesson_id=snapshot.last_lesson_id,
    )


def derive_snapshot(
    rows: Sequence[LessonProgressEntry], lesson_ids: Sequence[str]
) -> LocalSnapshot:
    """Rebuild a local snapshot from server rows.

    Completed ids follow the course's lesson order; the last lesson is
    the one accessed most recently.
    """
    if not rows:
        return LocalSnapshot()
    completed = {row.lesson_id for row in rows if row.completed}
    latest = max(
        (row for row in rows if row.last_accessed_at is not None),
        key=lambda row: row.last_accessed_at,
        default=None,
    )
    return LocalSnapshot(
        completed_lesson_ids=[i for i in lesson_ids if i in completed],
        lesson_progress={row.lesson_id: row.progress_percentage for row in rows},
        lesson_positions={row.lesson_id: row.time_spent or 0 for row in rows},
        last_lesson_id=latest.lesson_id if latest else None,
    )


class LessonProgressReader(Protocol):
    async def fetch_lesson_progress(
        self, course_id: str, lesson_ids: Sequence[str]
    ) -> list[LessonProgressEntry]: ...


class LocalSnapshotCache:
    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        outbox: Outbox | None = None,
        reader: LessonProgressReader | None = None,
        ttl_s: float = REMOTE_SYNC_TTL_S,
        max_concurrent: int = MAX_CONCURRENT_SYNCS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._storage = storage
        self._outbox = outbox
        self._reader = reader
        self._ttl_s = ttl_s
        self._clock = clock
        self._slots = asyncio.Semaphore(max_concurrent)
        self._recent: dict[tuple[str, str], tuple[float, LocalSnapshot]] = {}

    def read(self, course_id: str) -> LocalSnapshot | None:
        entry = self._load_all().get(course_id)
        if entry is None:
            return None
        return LocalSnapshot.from_json(entry)

    def write(
        self, course_id: str, snapshot: LocalSnapshot, context: SyncContext | None = None
    ) -> None:
        self._persist(course_id, snapshot)
        self._forget(course_id)
        if context is None or self._outbox is None or not context.lesson_ids:
            return
        try:
            self._enqueue(build_snapshot_input(snapshot, context), context.org_id)
        except ValueError:
            logger.warning(
                "Could not queue progress for course %s", course_id, exc_info=True
            )

    async def reconcile(self, context: SyncContext) -> LocalSnapshot:
        """Replace the local snapshot with the server's view and return it.

        A result fetched within the TTL is returned as is and not written
        back, so it never overwrites newer local progress.  A local
        ``write()`` drops that result for its course.

        A missing session, a denied read or a rate limit yields an empty
        snapshot and leaves the local entry alone.  Other transport errors
        propagate.
        """
        if self._reader is None or not context.lesson_ids:
            return LocalSnapshot()

        self._prune()
        key = (context.user_id, context.course_id)
        recent = self._recent.get(key)
        if recent is not None:
            return recent[1].copy()

        try:
            async with self._slots:
                rows = await self._fetch_rows(context)
        except (NoSessionError, NotAuthorizedError, RateLimitedError) as exc:
            logger.info(
                "Skipping reconciliation for course %s: %s", context.course_id, exc
            )
            return LocalSnapshot()
        snapshot = derive_snapshot(rows, context.lesson_ids)
        self._recent[key] = (self._clock(), snapshot.copy())
        self._persist(context.course_id, snapshot)
        return snapshot

    # ------------------------------------------------------------------

    async def _fetch_rows(self, context: SyncContext) -> list[LessonProgressEntry]:
        assert self._reader is not None
        rows: list[LessonProgressEntry] = []
        ids = list(context.lesson_ids)
        for start in range(0, len(ids), LESSON_IDS_PER_REQUEST):
            chunk = ids[start : start + LESSON_IDS_PER_REQUEST]
            if start > 0:
                await asyncio.sleep(CHUNK_PAUSE_S)
            rows.extend(await self._reader.fetch_lesson_progress(context.course_id, chunk))
        return rows

    def _prune(self) -> None:
        now = self._clock()
        expired = [k for k, (at, _) in self._recent.items() if now - at >= self._ttl_s]
        for key in expired:
            del self._recent[key]

    def _forget(self, course_id: str) -> None:
        for key in [k for k in self._recent if k[1] == course_id]:
            del self._recent[key]

    def _load_all(self) -> dict[str, Any]:
        try:
            raw = self._storage.get_item(PROGRESS_STORAGE_KEY)
            parsed = json.loads(raw) if raw else {}
        except (OSError, ValueError):
            logger.warning("Failed to load stored course progress", exc_info=True)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _persist(self, course_id: str, snapshot: LocalSnapshot) -> None:
        entries = self._load_all()
        entries[course_id] = snapshot.to_json()
        try:
            self._storage.set_item(PROGRESS_STORAGE_KEY, json.dumps(entries))
        except (OSError, TypeError, ValueError):
            logger.warning(
                "Failed to persist course progress for %s", course_id, exc_info=True
            )

    def _enqueue(self, data: ProgressSnapshotInput, org_id: str | None) -> None:
        assert self._outbox is not None
        timestamp = now_ms()
        for lesson in data.lessons:
            self._outbox.enqueue_progress(
                "lesson_completed" if lesson.completed else "lesson_progress",
                user_id=data.user_id,
                course_id=data.course_id,
                lesson_id=lesson.lesson_id,
                percent=lesson.progress_percent,
                position=lesson.position_seconds,
                time_spent_seconds=lesson.position_seconds,
                org_id=org_id,
                timestamp=timestamp,
            )
        finished = data.overall_percent >= 100
        self._outbox.enqueue_progress(
            "course_completed" if finished else "course_progress",
            user_id=data.user_id,
            course_id=data.course_id,
            lesson_id=data.last_lesson_id,
            percent=data.overall_percent,
            status="completed" if finished else "in_progress",
            time_spent_seconds=data.total_time_seconds,
            org_id=org_id,
            timestamp=timestamp,
        )
