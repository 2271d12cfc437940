"""
Serialization of jobs into the external shape.

Stored values are re-sanitized on the way out so rows written before a
sanitizer change, or by hand, still leave the API in bounded form.
"""

from typing import Iterable, List, Optional

from app.models.schedule_job import ScheduledPost, ScheduledPostStatus, ScheduleJob, ScheduleJobAttempt
from app.schemas.schedule_job import (
    MAX_CAPTION_LENGTH,
    ScheduledPostRead,
    ScheduleJobAttemptRead,
    ScheduleJobRead,
)
from app.utils.payload_sanitizer import sanitize_multiline, sanitize_payload, sanitize_single_line, truncate_message
from app.utils.time import ensure_utc, utc_now


def serialize_attempt(attempt: ScheduleJobAttempt) -> ScheduleJobAttemptRead:
    return ScheduleJobAttemptRead(
        id=attempt.id,
        attempt_number=attempt.attempt_number,
        started_at=ensure_utc(attempt.started_at) or utc_now(),
        finished_at=ensure_utc(attempt.finished_at),
        error=attempt.error,
        result=dict(attempt.result) if isinstance(attempt.result, dict) else None,
        created_at=ensure_utc(attempt.created_at) or utc_now(),
    )


def serialize_post(post: Optional[ScheduledPost]) -> Optional[ScheduledPostRead]:
    if post is None:
        return None

    caption = sanitize_multiline(post.caption)[:MAX_CAPTION_LENGTH] if post.caption else None
    media_urls = post.media_urls if isinstance(post.media_urls, list) else []
    return ScheduledPostRead(
        id=post.id,
        title=sanitize_single_line(post.title or ""),
        caption=caption or None,
        target=post.target,
        scheduled_for=ensure_utc(post.scheduled_for) or utc_now(),
        status=post.status or ScheduledPostStatus.PENDING,
        nsfw=bool(post.nsfw),
        spoiler=bool(post.spoiler),
        flair_id=post.flair_id,
        flair_text=sanitize_single_line(post.flair_text) if post.flair_text else None,
        send_replies=True if post.send_replies is None else bool(post.send_replies),
        media_urls=[url for url in media_urls if isinstance(url, str)],
    )


def serialize_job(
    job: ScheduleJob,
    attempts: Optional[Iterable[ScheduleJobAttempt]] = None,
) -> ScheduleJobRead:
    """Build the external shape. ``attempts`` must already be most-recent-first and capped."""
    return ScheduleJobRead(
        id=job.id,
        job_type=job.job_type,
        status=job.status,
        priority=job.priority,
        run_at=ensure_utc(job.run_at),
        retry_at=ensure_utc(job.retry_at),
        locked_at=ensure_utc(job.locked_at),
        locked_by=job.locked_by,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        retry_backoff_seconds=job.retry_backoff_seconds,
        last_error=truncate_message(job.last_error) if job.last_error else None,
        last_run_at=ensure_utc(job.last_run_at),
        payload=sanitize_payload(job.payload),
        created_at=ensure_utc(job.created_at),
        updated_at=ensure_utc(job.updated_at),
        scheduled_post=serialize_post(job.scheduled_post),
        attempt_history=[serialize_attempt(attempt) for attempt in attempts or []],
    )


def serialize_jobs(jobs: Iterable[ScheduleJob], attempts_by_job: dict) -> List[ScheduleJobRead]:
    return [serialize_job(job, attempts_by_job.get(job.id, [])) for job in jobs]
