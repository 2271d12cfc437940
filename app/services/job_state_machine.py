"""
Job state machine.

The only place that decides which status changes are legal, and the only
place that mutates status, lease and retry fields of a ScheduleJob (plus the
matching fields of its ScheduledPost). Helpers here mutate ORM objects in
memory; callers own the transaction.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from app.errors import JobConflictError
from app.models.schedule_job import (
    ScheduledPost,
    ScheduledPostStatus,
    ScheduleJob,
    ScheduleJobStatus,
    TERMINAL_STATUSES,
)
from app.services.retry_policy import RetryDecision
from app.utils.payload_sanitizer import truncate_message
from app.utils.time import utc_now

DEFAULT_CANCEL_REASON = "Cancelled by user"


class JobAction(str, enum.Enum):
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    FORCE_RUN = "force-run"
    CLAIM = "claim"
    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"


# Actions a user may request through the API
USER_ACTIONS = frozenset({JobAction.CANCEL, JobAction.RESCHEDULE, JobAction.FORCE_RUN})


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[ScheduleJobStatus]
    target: ScheduleJobStatus


_ALL = frozenset(ScheduleJobStatus)
_RUNNING = frozenset({ScheduleJobStatus.QUEUED})

TRANSITIONS: Dict[JobAction, Transition] = {
    JobAction.CANCEL: Transition(
        frozenset({ScheduleJobStatus.PENDING, ScheduleJobStatus.QUEUED, ScheduleJobStatus.FAILED}),
        ScheduleJobStatus.CANCELLED,
    ),
    JobAction.RESCHEDULE: Transition(
        frozenset({ScheduleJobStatus.PENDING, ScheduleJobStatus.QUEUED}),
        ScheduleJobStatus.PENDING,
    ),
    JobAction.FORCE_RUN: Transition(_ALL, ScheduleJobStatus.QUEUED),
    JobAction.CLAIM: Transition(
        frozenset({ScheduleJobStatus.PENDING, ScheduleJobStatus.QUEUED}),
        ScheduleJobStatus.QUEUED,
    ),
    JobAction.SUCCEED: Transition(_RUNNING, ScheduleJobStatus.SUCCEEDED),
    JobAction.RETRY: Transition(_RUNNING, ScheduleJobStatus.PENDING),
    JobAction.FAIL: Transition(_RUNNING, ScheduleJobStatus.FAILED),
}


def can_transition(status: ScheduleJobStatus, action: JobAction) -> bool:
    return ScheduleJobStatus(status) in TRANSITIONS[JobAction(action)].sources


def ensure_transition(job: ScheduleJob, action: JobAction) -> ScheduleJobStatus:
    """Return the target status or raise JobConflictError without touching the job."""
    action = JobAction(action)
    status = ScheduleJobStatus(job.status)
    if not can_transition(status, action):
        raise JobConflictError(
            f"Cannot {action.value} a job that is {status.value}.",
            {"jobId": str(job.id), "status": status.value, "action": action.value},
        )
    return TRANSITIONS[action].target


def _release_lease(job: ScheduleJob) -> None:
    job.locked_at = None
    job.locked_by = None


def _touch(job: ScheduleJob, now: datetime) -> None:
    job.updated_at = now
    if job.scheduled_post is not None:
        job.scheduled_post.updated_at = now


def apply_cancel(job: ScheduleJob, reason: Optional[str] = None, now: Optional[datetime] = None) -> ScheduleJob:
    now = now or utc_now()
    job.status = ensure_transition(job, JobAction.CANCEL)
    _release_lease(job)
    job.retry_at = None
    job.last_error = truncate_message(reason or DEFAULT_CANCEL_REASON)

    post = job.scheduled_post
    if post is not None:
        post.status = ScheduledPostStatus.CANCELLED
        post.cancelled_at = now
    _touch(job, now)
    return job


def apply_reschedule(job: ScheduleJob, run_at: datetime, now: Optional[datetime] = None) -> ScheduleJob:
    now = now or utc_now()
    job.status = ensure_transition(job, JobAction.RESCHEDULE)
    _release_lease(job)
    job.retry_at = None
    job.run_at = run_at

    post = job.scheduled_post
    if post is not None:
        post.status = ScheduledPostStatus.PENDING
        post.scheduled_for = run_at
    _touch(job, now)
    return job


def apply_force_run(job: ScheduleJob, now: Optional[datetime] = None) -> ScheduleJob:
    """Queue the job to run on the next claim pass. A terminal job gets a fresh retry budget."""
    now = now or utc_now()
    was_terminal = ScheduleJobStatus(job.status) in TERMINAL_STATUSES
    job.status = ensure_transition(job, JobAction.FORCE_RUN)
    _release_lease(job)
    job.retry_at = None
    job.run_at = now
    if was_terminal:
        job.attempts = 0

    post = job.scheduled_post
    if post is not None:
        post.status = ScheduledPostStatus.PENDING
        post.scheduled_for = now
        post.cancelled_at = None
        post.error_message = None
    _touch(job, now)
    return job


def claim_values(worker_id: str, now: datetime) -> Dict[str, Any]:
    """Column values written by the conditional claim UPDATE."""
    return {
        "status": TRANSITIONS[JobAction.CLAIM].target,
        "locked_at": now,
        "locked_by": worker_id,
        "retry_at": None,
        "updated_at": now,
    }


def apply_claim_to_post(post: Optional[ScheduledPost], now: Optional[datetime] = None) -> None:
    if post is None:
        return
    post.status = ScheduledPostStatus.PROCESSING
    post.updated_at = now or utc_now()


def apply_success(
    job: ScheduleJob,
    result: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ScheduleJob:
    now = now or utc_now()
    job.status = ensure_transition(job, JobAction.SUCCEED)
    _release_lease(job)
    job.retry_at = None
    job.last_error = None
    job.attempts = min(job.attempts + 1, job.max_attempts)
    job.last_run_at = now

    post = job.scheduled_post
    if post is not None:
        post.status = ScheduledPostStatus.SENT
        post.sent_at = now
        post.error_message = None
        external_id = (result or {}).get("externalId") or (result or {}).get("id")
        if external_id is not None:
            post.external_id = str(external_id)[:200]
    _touch(job, now)
    return job


def apply_failure(job: ScheduleJob, decision: RetryDecision, now: Optional[datetime] = None) -> ScheduleJob:
    """Apply a retry decision: back to pending with a retry time, or terminal failure."""
    now = now or utc_now()
    action = JobAction.FAIL if decision.terminal else JobAction.RETRY
    job.status = ensure_transition(job, action)
    _release_lease(job)
    job.attempts = decision.attempts
    job.last_error = decision.last_error
    job.last_run_at = now

    post = job.scheduled_post
    if decision.terminal:
        job.retry_at = None
        if post is not None:
            post.status = ScheduledPostStatus.FAILED
            post.error_message = decision.last_error
    else:
        job.retry_at = decision.retry_at
        job.run_at = decision.retry_at
        if post is not None:
            post.status = ScheduledPostStatus.PENDING
    _touch(job, now)
    return job


def apply_post_cancelled(job: ScheduleJob, now: Optional[datetime] = None) -> ScheduleJob:
    """The post was cancelled out of band while the job sat in the queue."""
    now = now or utc_now()
    job.status = ensure_transition(job, JobAction.CANCEL)
    _release_lease(job)
    job.retry_at = None
    job.last_error = DEFAULT_CANCEL_REASON
    _touch(job, now)
    return job
