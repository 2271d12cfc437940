"""
Scheduled job models.

A ScheduleJob is one deferred unit of work (e.g. publishing a post). It owns an
optional ScheduledPost carrying the action data, and an append-only history of
ScheduleJobAttempt rows.
"""

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.base_model import UserScopedModel
from app.utils.time import utc_now

JSONType = JSON().with_variant(JSONB(), "postgresql")

PUBLISH_POST_JOB_TYPE = "publish-post"


class ScheduleJobStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ScheduleJobStatus.SUCCEEDED, ScheduleJobStatus.FAILED, ScheduleJobStatus.CANCELLED}
)


class ScheduledPostStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


class ScheduledPost(UserScopedModel):
    """Concrete post data published when the parent job runs."""

    __tablename__ = "scheduled_posts"

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Target community on the external platform
    target: Mapped[str] = mapped_column(String(50), nullable=False)

    media_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    nsfw: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    spoiler: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flair_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    flair_text: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    send_replies: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str] = mapped_column(String(50), nullable=False, default="UTC")

    status: Mapped[ScheduledPostStatus] = mapped_column(
        SQLEnum(
            ScheduledPostStatus,
            name="scheduled_post_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
        default=ScheduledPostStatus.PENDING,
        index=True,
    )

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Identifier returned by the platform once published
    external_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class ScheduleJob(UserScopedModel):
    """
    Durable queue entry for a deferred action.

    Status, lease and retry bookkeeping live on the row so that every worker
    process coordinates through the database only.
    """

    __tablename__ = "schedule_jobs"

    scheduled_post_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("scheduled_posts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False, default=PUBLISH_POST_JOB_TYPE)

    status: Mapped[ScheduleJobStatus] = mapped_column(
        SQLEnum(
            ScheduleJobStatus,
            name="schedule_job_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
        default=ScheduleJobStatus.PENDING,
    )

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Execution lease: both set or both null
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    retry_backoff_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    scheduled_post: Mapped[Optional["ScheduledPost"]] = relationship(
        "ScheduledPost",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("attempts <= max_attempts", name="ck_schedule_jobs_attempts_within_max"),
        CheckConstraint("(locked_at IS NULL) = (locked_by IS NULL)", name="ck_schedule_jobs_lease_pair"),
        Index("ix_schedule_jobs_status_run_at", "status", "run_at"),
        Index("ix_schedule_jobs_user_status", "user_id", "status"),
        Index("ix_schedule_jobs_locked_at", "locked_at"),
    )

    @property
    def has_lease(self) -> bool:
        return self.locked_at is not None and self.locked_by is not None


class ScheduleJobAttempt(Base):
    """Immutable record of one execution try. Attempt numbers are contiguous per job."""

    __tablename__ = "schedule_job_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("schedule_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    worker_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("job_id", "attempt_number", name="uq_schedule_job_attempts_job_number"),
    )
