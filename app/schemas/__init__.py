"""
Schemas package.

Import all schemas here for easy access.
"""

from app.schemas.schedule_job import (
    ScheduledPostCreate,
    ScheduledPostRead,
    ScheduleJobAttemptRead,
    ScheduleJobCreate,
    ScheduleJobEnvelope,
    ScheduleJobListResponse,
    ScheduleJobRead,
    ScheduleJobUpdate,
)

__all__ = [
    "ScheduledPostCreate",
    "ScheduledPostRead",
    "ScheduleJobAttemptRead",
    "ScheduleJobCreate",
    "ScheduleJobEnvelope",
    "ScheduleJobListResponse",
    "ScheduleJobRead",
    "ScheduleJobUpdate",
]
