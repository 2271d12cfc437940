"""
Schedule job Pydantic schemas.

Request bodies and the serialized job shape returned by the API.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import Field, HttpUrl, TypeAdapter, ValidationError, field_validator

from app.models.schedule_job import ScheduledPostStatus, ScheduleJobStatus
from app.schemas.base import CamelModel, UserScopedRead

MAX_MEDIA_URLS = 10
MAX_MEDIA_URL_LENGTH = 1000
MAX_CAPTION_LENGTH = 40000
MAX_NOTE_LENGTH = 500

_http_url = TypeAdapter(HttpUrl)


# ============================================================================
# Request Schemas
# ============================================================================

class ScheduledPostCreate(CamelModel):
    """Post data attached to a publish-post job."""

    title: str = Field(..., min_length=4, max_length=300)
    caption: Optional[str] = Field(None, max_length=MAX_CAPTION_LENGTH)
    target: str = Field(..., pattern=r"^[A-Za-z0-9_]{3,21}$")
    media_urls: List[str] = Field(default_factory=list, max_length=MAX_MEDIA_URLS)
    nsfw: bool = False
    spoiler: bool = False
    flair_id: Optional[str] = Field(None, max_length=100)
    flair_text: Optional[str] = Field(None, max_length=100)
    send_replies: bool = True
    timezone: str = Field(default="UTC", max_length=50)

    @field_validator("media_urls")
    @classmethod
    def validate_media_urls(cls, value: List[str]) -> List[str]:
        for url in value:
            if len(url) > MAX_MEDIA_URL_LENGTH:
                raise ValueError(f"Media URLs must be at most {MAX_MEDIA_URL_LENGTH} characters")
            try:
                _http_url.validate_python(url)
            except ValidationError as exc:
                raise ValueError(f"Invalid media URL: {url[:100]}") from exc
        return value


class ScheduleJobCreate(CamelModel):
    """Schema for creating a scheduled job."""

    job_type: str = Field(default="publish-post", min_length=3, max_length=50)
    run_at: datetime
    priority: int = Field(default=0, ge=-10, le=10)
    max_attempts: Optional[int] = Field(None, ge=1, le=10)
    retry_backoff_seconds: Optional[int] = Field(None, ge=10, le=3600)
    notes: Optional[str] = Field(None, max_length=MAX_NOTE_LENGTH)
    payload: Optional[Dict[str, Any]] = None
    scheduled_post: Optional[ScheduledPostCreate] = None


class ScheduleJobUpdate(CamelModel):
    """Single user action against an existing job."""

    action: Literal["cancel", "reschedule", "force-run"]
    run_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=MAX_NOTE_LENGTH)


# ============================================================================
# Response Schemas
# ============================================================================

class ScheduleJobAttemptRead(CamelModel):
    id: UUID
    attempt_number: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime


class ScheduledPostRead(CamelModel):
    id: UUID
    title: str
    caption: Optional[str] = None
    target: str
    scheduled_for: datetime
    status: ScheduledPostStatus
    nsfw: bool = False
    spoiler: bool = False
    flair_id: Optional[str] = None
    flair_text: Optional[str] = None
    send_replies: bool = True
    media_urls: List[str] = Field(default_factory=list)


class ScheduleJobRead(UserScopedRead):
    """Serialized job: ids, ISO-8601 UTC timestamps, sanitized payload, recent attempts."""

    job_type: str
    status: ScheduleJobStatus
    priority: int
    run_at: datetime
    retry_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    attempts: int
    max_attempts: int
    retry_backoff_seconds: int
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    scheduled_post: Optional[ScheduledPostRead] = None
    attempt_history: List[ScheduleJobAttemptRead] = Field(default_factory=list)


class ScheduleJobEnvelope(CamelModel):
    job: ScheduleJobRead


class ScheduleJobListResponse(CamelModel):
    jobs: List[ScheduleJobRead]
