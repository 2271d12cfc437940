"""Create scheduled posts, schedule jobs and attempts

Revision ID: a1c4e7f20b91
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1c4e7f20b91"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "scheduled_posts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("target", sa.String(length=50), nullable=False),
        sa.Column("media_urls", JSON_TYPE, nullable=False),
        sa.Column("nsfw", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("spoiler", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("flair_id", sa.String(length=100), nullable=True),
        sa.Column("flair_text", sa.String(length=100), nullable=True),
        sa.Column("send_replies", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("timezone", sa.String(length=50), nullable=False, server_default="UTC"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduled_posts_user_id", "scheduled_posts", ["user_id"], unique=False)
    op.create_index("ix_scheduled_posts_status", "scheduled_posts", ["status"], unique=False)

    op.create_table(
        "schedule_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("scheduled_post_id", sa.Uuid(), nullable=True),
        sa.Column("job_type", sa.String(length=50), nullable=False, server_default="publish-post"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=200), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("retry_backoff_seconds", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["scheduled_post_id"], ["scheduled_posts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_schedule_jobs_attempts_within_max"),
        sa.CheckConstraint(
            "(locked_at IS NULL) = (locked_by IS NULL)",
            name="ck_schedule_jobs_lease_pair",
        ),
    )
    op.create_index("ix_schedule_jobs_user_id", "schedule_jobs", ["user_id"], unique=False)
    op.create_index("ix_schedule_jobs_scheduled_post_id", "schedule_jobs", ["scheduled_post_id"], unique=False)
    op.create_index("ix_schedule_jobs_status_run_at", "schedule_jobs", ["status", "run_at"], unique=False)
    op.create_index("ix_schedule_jobs_user_status", "schedule_jobs", ["user_id", "status"], unique=False)
    op.create_index("ix_schedule_jobs_locked_at", "schedule_jobs", ["locked_at"], unique=False)

    op.create_table(
        "schedule_job_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(length=200), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("result", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["schedule_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "attempt_number", name="uq_schedule_job_attempts_job_number"),
    )
    op.create_index("ix_schedule_job_attempts_job_id", "schedule_job_attempts", ["job_id"], unique=False)
    op.create_index("ix_schedule_job_attempts_started_at", "schedule_job_attempts", ["started_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_schedule_job_attempts_started_at", table_name="schedule_job_attempts")
    op.drop_index("ix_schedule_job_attempts_job_id", table_name="schedule_job_attempts")
    op.drop_table("schedule_job_attempts")

    op.drop_index("ix_schedule_jobs_locked_at", table_name="schedule_jobs")
    op.drop_index("ix_schedule_jobs_user_status", table_name="schedule_jobs")
    op.drop_index("ix_schedule_jobs_status_run_at", table_name="schedule_jobs")
    op.drop_index("ix_schedule_jobs_scheduled_post_id", table_name="schedule_jobs")
    op.drop_index("ix_schedule_jobs_user_id", table_name="schedule_jobs")
    op.drop_table("schedule_jobs")

    op.drop_index("ix_scheduled_posts_status", table_name="scheduled_posts")
    op.drop_index("ix_scheduled_posts_user_id", table_name="scheduled_posts")
    op.drop_table("scheduled_posts")
