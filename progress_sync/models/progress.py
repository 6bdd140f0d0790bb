from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel


@dataclass(slots=True)
class LessonProgressRecord:
    """Current state of one (user, lesson).  Mutated in place by the store."""

    user_id: str
    lesson_id: str
    course_id: str
    org_id: str | None = None
    progress_percentage: int = 0
    completed: bool = False
    position_seconds: float = 0.0
    time_spent: float = 0.0  # what readers use as the resume point
    last_accessed_at: datetime | None = None


@dataclass(slots=True)
class CourseProgressRecord:
    user_id: str
    course_id: str
    org_id: str | None = None
    status: str = "in_progress"  # in_progress|completed
    percent: int = 0
    last_lesson_id: str | None = None
    time_spent_seconds: float | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class FailedEvent:
    id: str
    reason: str  # invalid|missing_target|user_mismatch|org_mismatch|missing_org|exception


@dataclass(slots=True)
class BatchResult:
    """Per-id classification of one submitted batch.

    Every event that reached the store lands in exactly one bucket.
    """

    accepted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    failed: list[FailedEvent] = field(default_factory=list)

    def merge(self, other: BatchResult) -> None:
        self.accepted.extend(other.accepted)
        self.duplicates.extend(other.duplicates)
        self.failed.extend(other.failed)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class FailedEventOut(BaseModel):
    id: str
    reason: str


class BatchResultOut(BaseModel):
    accepted: list[str]
    duplicates: list[str]
    failed: list[FailedEventOut]

    @staticmethod
    def from_result(result: BatchResult) -> BatchResultOut:
        return BatchResultOut(
            accepted=result.accepted,
            duplicates=result.duplicates,
            failed=[FailedEventOut(id=f.id, reason=f.reason) for f in result.failed],
        )


class LessonProgressEntry(BaseModel):
    """One row of ``GET /progress/lessons``; also what the client parses."""

    lesson_id: str
    progress_percentage: int = 0
    completed: bool = False
    time_spent: float = 0
    last_accessed_at: datetime | None = None

    @staticmethod
    def empty(lesson_id: str) -> LessonProgressEntry:
        return LessonProgressEntry(lesson_id=lesson_id)

    @staticmethod
    def from_record(record: LessonProgressRecord) -> LessonProgressEntry:
        return LessonProgressEntry(
            lesson_id=record.lesson_id,
            progress_percentage=record.progress_percentage,
            completed=record.completed,
            time_spent=record.time_spent,
            last_accessed_at=record.last_accessed_at,
        )


class CourseProgressOut(BaseModel):
    course_id: str
    status: str
    percent: int
    last_lesson_id: str | None
    time_spent_seconds: float | None
    completed_at: datetime | None
    updated_at: datetime | None

    @staticmethod
    def from_record(record: CourseProgressRecord) -> CourseProgressOut:
        return CourseProgressOut(
            course_id=record.course_id,
            status=record.status,
            percent=record.percent,
            last_lesson_id=record.last_lesson_id,
            time_spent_seconds=record.time_spent_seconds,
            completed_at=record.completed_at,
            updated_at=record.updated_at,
        )
