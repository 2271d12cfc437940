"""
Schedule job service - user-facing operations on scheduled jobs.

Create, list, load and the cancel / reschedule / force-run actions. Nothing
here waits on execution; every call is a short read or write.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.dependencies import Principal
from app.errors import JobNotFoundError, JobValidationError, ScheduleWindowError
from app.models.schedule_job import (
    PUBLISH_POST_JOB_TYPE,
    ScheduledPost,
    ScheduledPostStatus,
    ScheduleJob,
    ScheduleJobStatus,
)
from app.repositories.schedule_job_attempt_repository import ScheduleJobAttemptRepository
from app.repositories.schedule_job_repository import ScheduleJobRepository
from app.schemas.schedule_job import (
    MAX_CAPTION_LENGTH,
    MAX_NOTE_LENGTH,
    ScheduleJobCreate,
    ScheduleJobRead,
)
from app.services import job_state_machine
from app.services.job_state_machine import JobAction
from app.services.schedule_job_serializer import serialize_job, serialize_jobs
from app.services.schedule_window import resolve_scheduling_constraints, validate_schedule_window
from app.utils.payload_sanitizer import sanitize_multiline, sanitize_payload, sanitize_single_line
from app.utils.time import ensure_utc, to_iso, utc_now

logger = logging.getLogger(__name__)


def parse_status_filters(raw: Optional[str]) -> Optional[List[ScheduleJobStatus]]:
    """Parse a comma separated status filter. Unknown values are ignored; nothing valid means no filter."""
    if not raw:
        return None

    statuses: List[ScheduleJobStatus] = []
    for part in raw.split(","):
        candidate = sanitize_single_line(part).lower()
        try:
            status = ScheduleJobStatus(candidate)
        except ValueError:
            continue
        if status not in statuses:
            statuses.append(status)
    return statuses or None


def clamp_limit(limit: Optional[int]) -> int:
    """Missing or non-positive limits fall back to the default page size."""
    if limit is None or limit <= 0:
        return settings.JOB_LIST_DEFAULT_LIMIT
    return min(int(limit), settings.JOB_LIST_MAX_LIMIT)


def dedupe_media_urls(urls: Optional[Iterable[str]]) -> List[str]:
    seen = set()
    cleaned: List[str] = []
    for url in urls or []:
        value = sanitize_single_line(url)
        if value and value not in seen:
            seen.add(value)
            cleaned.append(value)
    return cleaned


class ScheduleJobService:
    """Service for user-facing scheduled job operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = ScheduleJobRepository(db)
        self.attempts = ScheduleJobAttemptRepository(db)

    def _check_window(self, principal: Principal, run_at: datetime) -> None:
        constraints = resolve_scheduling_constraints(principal.tier)
        reason = validate_schedule_window(run_at, constraints.max_days)
        if reason:
            raise ScheduleWindowError(
                reason,
                {"tier": constraints.tier, "maxDays": constraints.max_days},
            )

    async def create_job(self, principal: Principal, data: ScheduleJobCreate) -> ScheduleJobRead:
        """Validate, sanitize and persist a pending job together with its post."""
        run_at = ensure_utc(data.run_at)
        self._check_window(principal, run_at)

        job_type = sanitize_single_line(data.job_type)
        if len(job_type) < 3:
            raise JobValidationError("jobType must be at least 3 characters.", {"field": "jobType"})

        post_data = data.scheduled_post
        if job_type == PUBLISH_POST_JOB_TYPE and post_data is None:
            raise JobValidationError(
                "A scheduled post is required for publish-post jobs.",
                {"field": "scheduledPost"},
            )

        media_urls: List[str] = []
        post: Optional[ScheduledPost] = None
        if post_data is not None:
            title = sanitize_single_line(post_data.title)
            if not title:
                raise JobValidationError("Post title is empty after sanitization.", {"field": "scheduledPost.title"})
            caption = sanitize_multiline(post_data.caption)[:MAX_CAPTION_LENGTH] if post_data.caption else None
            media_urls = dedupe_media_urls(post_data.media_urls)
            post = ScheduledPost(
                user_id=principal.user_id,
                title=title,
                caption=caption or None,
                target=post_data.target.strip(),
                media_urls=media_urls,
                nsfw=post_data.nsfw,
                spoiler=post_data.spoiler,
                flair_id=post_data.flair_id,
                flair_text=sanitize_single_line(post_data.flair_text) if post_data.flair_text else None,
                send_replies=post_data.send_replies,
                timezone=post_data.timezone,
                status=ScheduledPostStatus.PENDING,
                scheduled_for=run_at,
            )

        payload = sanitize_payload(data.payload or {})
        payload["tier"] = resolve_scheduling_constraints(principal.tier).tier
        payload["mediaCount"] = len(media_urls)
        notes = sanitize_multiline(data.notes)[:MAX_NOTE_LENGTH] if data.notes else ""
        if notes:
            payload["notes"] = notes

        job = ScheduleJob(
            user_id=principal.user_id,
            job_type=job_type,
            status=ScheduleJobStatus.PENDING,
            priority=data.priority,
            run_at=run_at,
            attempts=0,
            max_attempts=data.max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
            retry_backoff_seconds=data.retry_backoff_seconds or settings.DEFAULT_RETRY_BACKOFF_SECONDS,
            payload=sanitize_payload(payload),
        )
        await self.repo.create_job_with_post(job, post)

        logger.info(
            "Created schedule job %s (%s) for user %s, run_at=%s",
            job.id,
            job.job_type,
            principal.user_id,
            to_iso(run_at),
        )
        return serialize_job(job, [])

    async def list_jobs(
        self,
        user_id: str,
        statuses: Optional[List[ScheduleJobStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[ScheduleJobRead]:
        """List a user's jobs with a few recent attempts each."""
        jobs = await self.repo.list_for_user(user_id, statuses=statuses, limit=clamp_limit(limit))
        attempts = await self.attempts.list_recent_for_jobs(
            [job.id for job in jobs],
            per_job=settings.ATTEMPT_HISTORY_LIST_LIMIT,
        )
        return serialize_jobs(jobs, attempts)

    async def _load_owned(self, user_id: str, job_id: UUID, *, for_update: bool = False) -> ScheduleJob:
        job = await self.repo.get_for_user(user_id, job_id, for_update=for_update)
        if job is None:
            raise JobNotFoundError("Job not found", {"jobId": str(job_id)})
        return job

    async def _serialize_with_history(self, job: ScheduleJob) -> ScheduleJobRead:
        history = await self.attempts.list_recent(job.id, limit=settings.ATTEMPT_HISTORY_LIMIT)
        return serialize_job(job, history)

    async def get_job(self, user_id: str, job_id: UUID) -> ScheduleJobRead:
        job = await self._load_owned(user_id, job_id)
        return await self._serialize_with_history(job)

    async def _settle_running_attempts(self, job: ScheduleJob, action: JobAction, now: datetime) -> None:
        """
        Close the attempt of a worker whose lease this action releases.

        The attempt is marked discarded and not counted against the retry
        budget, so the next claim does not mistake it for an expired lease.
        The worker's own outcome is discarded when it reports.
        """
        if job.status != ScheduleJobStatus.QUEUED or not job.locked_by:
            return

        settled = 0
        for attempt in await self.attempts.list_open(job.id):
            closed = await self.attempts.finish_attempt(
                attempt,
                result={"discarded": True, "reason": f"{action.value} by user"},
                finished_at=now,
            )
            settled += int(closed)
        if settled:
            logger.info(
                "Released lease of worker %s on schedule job %s (%s), %d running attempt(s) discarded",
                job.locked_by,
                job.id,
                action.value,
                settled,
            )

    async def update_job(
        self,
        principal: Principal,
        job_id: UUID,
        action: str,
        run_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> ScheduleJobRead:
        """
        Apply one user action (cancel, reschedule, force-run).

        The job row is locked for the duration of the transaction, so the
        change cannot interleave with a worker reporting an outcome.
        """
        try:
            job_action = JobAction(action)
        except ValueError:
            raise JobValidationError("Unsupported action.", {"action": action})
        if job_action not in job_state_machine.USER_ACTIONS:
            raise JobValidationError("Unsupported action.", {"action": action})

        job = await self._load_owned(principal.user_id, job_id, for_update=True)
        now = utc_now()
        note = sanitize_multiline(reason)[:MAX_NOTE_LENGTH] if reason else ""

        payload = dict(job.payload) if isinstance(job.payload, dict) else {}
        payload["lastAction"] = job_action.value
        payload["lastActionAt"] = to_iso(now)
        if note:
            payload["lastActionNote"] = note

        new_run_at: Optional[datetime] = None
        if job_action is JobAction.RESCHEDULE:
            if run_at is None:
                raise JobValidationError(
                    "runAt must be provided when rescheduling a job.",
                    {"field": "runAt"},
                )
            new_run_at = ensure_utc(run_at)
            # Conflict is checked before the window so a finished job reports as such
            job_state_machine.ensure_transition(job, JobAction.RESCHEDULE)
            self._check_window(principal, new_run_at)
            payload["lastScheduledFor"] = to_iso(new_run_at)
        else:
            job_state_machine.ensure_transition(job, job_action)

        await self._settle_running_attempts(job, job_action, now)

        if job_action is JobAction.CANCEL:
            job_state_machine.apply_cancel(job, reason=note or None, now=now)
        elif job_action is JobAction.RESCHEDULE:
            job_state_machine.apply_reschedule(job, new_run_at, now=now)
        else:
            job_state_machine.apply_force_run(job, now=now)

        job.payload = sanitize_payload(payload)
        await self.db.flush()

        logger.info(
            "User %s applied %s to schedule job %s -> %s",
            principal.user_id,
            job_action.value,
            job.id,
            job.status.value,
        )
        return await self._serialize_with_history(job)
