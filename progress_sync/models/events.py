"""Progress and analytics events: the unit that travels from outbox to store.

A progress event is one of four variants.  The variant *is* the event
type, so code that needs to treat lessons and courses differently
matches on the class instead of inspecting a ``type`` string::

    match event:
        case LessonProgress() | LessonCompleted():
            ...
        case CourseProgress() | CourseCompleted():
            ...

``client_event_id`` is generated by the client when the learner does
something and never changes afterwards.  It is the only idempotency key:
the same id submitted twice is the same update.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

EventType = Literal[
    "lesson_progress",
    "lesson_completed",
    "course_progress",
    "course_completed",
]


def clamp_percent(value: float | None) -> int:
    """Round half up and clamp into [0, 100].  NaN and None become 0."""
    if value is None or math.isnan(value):
        return 0
    if value >= 100:
        return 100
    if value <= 0:
        return 0
    return int(math.floor(value + 0.5))


def now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Progress events (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, kw_only=True)
class _ProgressEventBase:
    type: ClassVar[EventType]

    client_event_id: str
    user_id: str
    timestamp: int  # epoch ms, set by the client
    course_id: str | None = None
    lesson_id: str | None = None
    percent: int | None = None
    position: float | None = None  # seconds
    status: str | None = None
    time_spent_seconds: float | None = None
    org_id: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class LessonProgress(_ProgressEventBase):
    type: ClassVar[EventType] = "lesson_progress"


@dataclass(frozen=True, slots=True, kw_only=True)
class LessonCompleted(_ProgressEventBase):
    type: ClassVar[EventType] = "lesson_completed"


@dataclass(frozen=True, slots=True, kw_only=True)
class CourseProgress(_ProgressEventBase):
    type: ClassVar[EventType] = "course_progress"


@dataclass(frozen=True, slots=True, kw_only=True)
class CourseCompleted(_ProgressEventBase):
    type: ClassVar[EventType] = "course_completed"


ProgressEvent = LessonProgress | LessonCompleted | CourseProgress | CourseCompleted
LessonEvent = LessonProgress | LessonCompleted
CourseEvent = CourseProgress | CourseCompleted

EVENT_CLASSES: dict[str, type[_ProgressEventBase]] = {
    cls.type: cls
    for cls in (LessonProgress, LessonCompleted, CourseProgress, CourseCompleted)
}


def resolve_event_type(
    provided: str | None, percent: float | None, is_lesson: bool
) -> str:
    """Pick a type for events that arrive without one.

    Older clients post bare ``{lessonId, percent}`` payloads; those are
    treated as completions once they reach 100.
    """
    if provided:
        return provided
    completed = percent is not None and percent >= 100
    if is_lesson:
        return "lesson_completed" if completed else "lesson_progress"
    return "course_completed" if completed else "course_progress"


def build_progress_event(event_type: str, **fields: Any) -> ProgressEvent:
    """Construct the variant for ``event_type``.

    Raises ValueError for unknown types and for events without the ids
    their variant needs (lesson events need course and lesson, course
    events need course).
    """
    cls = EVENT_CLASSES.get(event_type)
    if cls is None:
        raise ValueError(f"unknown event type {event_type!r}")
    event = cls(**fields)
    if not event.course_id:
        raise ValueError("missing_target")
    if isinstance(event, LessonEvent) and not event.lesson_id:
        raise ValueError("missing_target")
    return event  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Analytics events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, kw_only=True)
class AnalyticsEvent:
    client_event_id: str
    type: str
    timestamp: int
    user_id: str | None = None
    course_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    org_id: str | None = None


def to_wire(event: ProgressEvent | AnalyticsEvent) -> dict[str, Any]:
    """camelCase JSON body for one event, omitting unset fields."""
    if isinstance(event, AnalyticsEvent):
        payload: dict[str, Any] = {
            "clientEventId": event.client_event_id,
            "type": event.type,
            "timestamp": event.timestamp,
            "userId": event.user_id,
            "courseId": event.course_id,
            "data": event.data,
            "orgId": event.org_id,
        }
    else:
        payload = {
            "clientEventId": event.client_event_id,
            "type": event.type,
            "userId": event.user_id,
            "timestamp": event.timestamp,
            "courseId": event.course_id,
            "lessonId": event.lesson_id,
            "percent": event.percent,
            "position": event.position,
            "status": event.status,
            "timeSpentSeconds": event.time_spent_seconds,
            "orgId": event.org_id,
        }
    return {key: value for key, value in payload.items() if value is not None}


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ProgressEventIn(BaseModel):
    """One entry of ``POST /progress/batch``.

    Accepts the camelCase names the current client sends and the
    snake_case spellings older clients used.
    """

    model_config = ConfigDict(extra="ignore")

    client_event_id: str = Field(
        min_length=1, validation_alias=_alias("clientEventId", "client_event_id")
    )
    type: EventType | None = Field(
        default=None, validation_alias=_alias("type", "event_type")
    )
    user_id: str | None = Field(default=None, validation_alias=_alias("userId", "user_id"))
    course_id: str | None = Field(
        default=None, validation_alias=_alias("courseId", "course_id")
    )
    lesson_id: str | None = Field(
        default=None, validation_alias=_alias("lessonId", "lesson_id")
    )
    percent: float | None = Field(
        default=None,
        validation_alias=_alias("percent", "progressPercent", "progress_percent"),
    )
    position: float | None = Field(
        default=None,
        validation_alias=_alias("position", "position_seconds", "resume_at_s"),
    )
    status: str | None = Field(
        default=None, validation_alias=_alias("status", "progress_status")
    )
    time_spent_seconds: float | None = Field(
        default=None,
        validation_alias=_alias("timeSpentSeconds", "time_spent_s", "time_spent_seconds"),
    )
    timestamp: int | None = None
    org_id: str | None = Field(
        default=None, validation_alias=_alias("orgId", "org_id", "organization_id")
    )

    def to_domain(self, *, user_id: str, org_id: str) -> ProgressEvent:
        event_type = resolve_event_type(self.type, self.percent, self.lesson_id is not None)
        return build_progress_event(
            event_type,
            client_event_id=self.client_event_id,
            user_id=user_id,
            timestamp=self.timestamp if self.timestamp is not None else now_ms(),
            course_id=self.course_id,
            lesson_id=self.lesson_id,
            percent=clamp_percent(self.percent) if self.percent is not None else None,
            position=max(0.0, self.position) if self.position is not None else None,
            status=self.status,
            time_spent_seconds=self.time_spent_seconds,
            org_id=org_id,
        )


class AnalyticsEventIn(BaseModel):
    """One entry of ``POST /analytics/batch``."""

    model_config = ConfigDict(extra="ignore")

    client_event_id: str = Field(
        min_length=1, validation_alias=_alias("clientEventId", "client_event_id")
    )
    type: str = Field(min_length=1, validation_alias=_alias("type", "event_type"))
    user_id: str | None = Field(default=None, validation_alias=_alias("userId", "user_id"))
    course_id: str | None = Field(
        default=None, validation_alias=_alias("courseId", "course_id")
    )
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: int | None = None
    org_id: str | None = Field(
        default=None, validation_alias=_alias("orgId", "org_id", "organization_id")
    )

    def to_domain(self, *, user_id: str, org_id: str) -> AnalyticsEvent:
        return AnalyticsEvent(
            client_event_id=self.client_event_id,
            type=self.type,
            timestamp=self.timestamp if self.timestamp is not None else now_ms(),
            user_id=user_id,
            course_id=self.course_id,
            data=self.data,
            org_id=org_id,
        )
