"""SQLAlchemy table definitions.

These map to the dataclass records in progress_sync/models/progress.py.
Repos convert between SQLAlchemy rows and records.

Ids are strings: lesson, course and user ids come from the content and
identity systems and this service never interprets them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from progress_sync.db.engine import Base


class ProcessedEventRow(Base):
    """Idempotency ledger: one row per client_event_id ever applied.

    Shared by progress and analytics events.
    """

    __tablename__ = "processed_events"

    client_event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_class: Mapped[str] = mapped_column(String(16), nullable=False)  # progress|analytics
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class LessonProgressRow(Base):
    __tablename__ = "lesson_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    time_spent: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (Index("ix_lesson_progress_user_course", "user_id", "course_id"),)


class CourseProgressRow(Base):
    __tablename__ = "course_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="in_progress"
    )  # in_progress|completed
    percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_lesson_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    time_spent_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class AnalyticsEventRow(Base):
    __tablename__ = "analytics_events"

    client_event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    type: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    course_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    occurred_at: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch ms
