"""
Models package.

Import all models here so they are registered with SQLAlchemy.
This file also makes it easy to import models from one place.
"""

from app.models.schedule_job import (
    ScheduledPost,
    ScheduledPostStatus,
    ScheduleJob,
    ScheduleJobAttempt,
    ScheduleJobStatus,
    TERMINAL_STATUSES,
)

# Export all models
__all__ = [
    "ScheduledPost",
    "ScheduledPostStatus",
    "ScheduleJob",
    "ScheduleJobAttempt",
    "ScheduleJobStatus",
    "TERMINAL_STATUSES",
]
