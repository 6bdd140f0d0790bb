"""create progress tables

Revision ID: 3b1f0c9d2e47
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1f0c9d2e47"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "processed_events",
        sa.Column("client_event_id", sa.String(length=128), primary_key=True),
        sa.Column("event_class", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("org_id", sa.String(length=128), nullable=True),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_table(
        "lesson_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("lesson_id", sa.String(length=128), primary_key=True),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("org_id", sa.String(length=128), nullable=True),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("position_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("time_spent", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_lesson_progress_user_course", "lesson_progress", ["user_id", "course_id"]
    )
    op.create_table(
        "course_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("course_id", sa.String(length=128), primary_key=True),
        sa.Column("org_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="in_progress"),
        sa.Column("percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_lesson_id", sa.String(length=128), nullable=True),
        sa.Column("time_spent_seconds", sa.Float(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "analytics_events",
        sa.Column("client_event_id", sa.String(length=128), primary_key=True),
        sa.Column("type", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("course_id", sa.String(length=128), nullable=True),
        sa.Column("org_id", sa.String(length=128), nullable=True),
        sa.Column(
            "data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("occurred_at", sa.BigInteger(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("analytics_events")
    op.drop_table("course_progress")
    op.drop_index("ix_lesson_progress_user_course", table_name="lesson_progress")
    op.drop_table("lesson_progress")
    op.drop_table("processed_events")
