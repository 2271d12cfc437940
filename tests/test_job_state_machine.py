"""Unit tests for job status transitions (in-memory objects, no database)."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.errors import JobConflictError
from app.models.schedule_job import ScheduledPost, ScheduledPostStatus, ScheduleJob, ScheduleJobStatus
from app.services import job_state_machine as sm
from app.services.job_state_machine import JobAction
from app.services.retry_policy import decide_retry

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_job(status=ScheduleJobStatus.PENDING, with_post=True, **overrides):
    post = None
    if with_post:
        post = ScheduledPost(
            id=uuid.uuid4(),
            user_id="user-1",
            title="Title",
            target="community",
            media_urls=[],
            status=ScheduledPostStatus.PENDING,
            scheduled_for=NOW + timedelta(days=1),
        )
    fields = dict(
        id=uuid.uuid4(),
        user_id="user-1",
        job_type="publish-post",
        status=status,
        priority=0,
        run_at=NOW + timedelta(days=1),
        retry_at=None,
        locked_at=None,
        locked_by=None,
        attempts=0,
        max_attempts=3,
        retry_backoff_seconds=60,
        last_error=None,
        payload={},
    )
    fields.update(overrides)
    return ScheduleJob(scheduled_post=post, **fields)


@pytest.mark.unit
def test_every_action_has_a_transition():
    assert set(sm.TRANSITIONS) == set(JobAction)
    assert sm.USER_ACTIONS == {JobAction.CANCEL, JobAction.RESCHEDULE, JobAction.FORCE_RUN}


@pytest.mark.unit
@pytest.mark.parametrize(
    "status",
    [ScheduleJobStatus.PENDING, ScheduleJobStatus.QUEUED, ScheduleJobStatus.FAILED],
)
def test_cancel_from_cancellable_statuses(status):
    job = make_job(status, locked_at=NOW, locked_by="worker-a")

    sm.apply_cancel(job, reason=None, now=NOW)

    assert job.status == ScheduleJobStatus.CANCELLED
    assert job.locked_at is None and job.locked_by is None
    assert job.last_error == "Cancelled by user"
    assert job.scheduled_post.status == ScheduledPostStatus.CANCELLED
    assert job.scheduled_post.cancelled_at == NOW


@pytest.mark.unit
@pytest.mark.parametrize("status", [ScheduleJobStatus.SUCCEEDED, ScheduleJobStatus.CANCELLED])
def test_cancel_of_finished_job_is_a_conflict_and_changes_nothing(status):
    job = make_job(status, last_error="previous")

    with pytest.raises(JobConflictError) as exc_info:
        sm.apply_cancel(job, reason="stop", now=NOW)

    assert exc_info.value.status_code == 409
    assert job.status == status
    assert job.last_error == "previous"
    assert job.scheduled_post.status == ScheduledPostStatus.PENDING


@pytest.mark.unit
@pytest.mark.parametrize("status", [ScheduleJobStatus.PENDING, ScheduleJobStatus.QUEUED])
def test_reschedule_clears_lease_and_retry(status):
    job = make_job(status, locked_at=NOW, locked_by="worker-a", retry_at=NOW)
    new_time = NOW + timedelta(days=3)

    sm.apply_reschedule(job, new_time, now=NOW)

    assert job.status == ScheduleJobStatus.PENDING
    assert job.run_at == new_time
    assert job.retry_at is None
    assert job.locked_at is None and job.locked_by is None
    assert job.scheduled_post.status == ScheduledPostStatus.PENDING
    assert job.scheduled_post.scheduled_for == new_time


@pytest.mark.unit
@pytest.mark.parametrize(
    "status",
    [ScheduleJobStatus.SUCCEEDED, ScheduleJobStatus.FAILED, ScheduleJobStatus.CANCELLED],
)
def test_reschedule_of_terminal_job_is_a_conflict(status):
    job = make_job(status)
    with pytest.raises(JobConflictError):
        sm.apply_reschedule(job, NOW + timedelta(days=1), now=NOW)
    assert job.status == status


@pytest.mark.unit
def test_force_run_queues_pending_job_immediately():
    job = make_job(ScheduleJobStatus.PENDING, attempts=1, locked_at=NOW, locked_by="worker-a")

    sm.apply_force_run(job, now=NOW)

    assert job.status == ScheduleJobStatus.QUEUED
    assert job.run_at == NOW
    assert job.locked_at is None and job.locked_by is None
    assert job.attempts == 1
    assert job.scheduled_post.scheduled_for == NOW


@pytest.mark.unit
def test_force_run_of_failed_job_resets_retry_budget():
    job = make_job(ScheduleJobStatus.FAILED, attempts=3)
    job.scheduled_post.status = ScheduledPostStatus.FAILED
    job.scheduled_post.error_message = "boom"

    sm.apply_force_run(job, now=NOW)

    assert job.status == ScheduleJobStatus.QUEUED
    assert job.attempts == 0
    assert job.scheduled_post.status == ScheduledPostStatus.PENDING
    assert job.scheduled_post.error_message is None


@pytest.mark.unit
def test_success_releases_lease_and_records_result():
    job = make_job(ScheduleJobStatus.QUEUED, locked_at=NOW, locked_by="worker-a", last_error="old")

    sm.apply_success(job, {"externalId": "t3_xyz"}, now=NOW)

    assert job.status == ScheduleJobStatus.SUCCEEDED
    assert job.attempts == 1
    assert job.last_error is None
    assert job.last_run_at == NOW
    assert job.locked_at is None and job.locked_by is None
    assert job.scheduled_post.status == ScheduledPostStatus.SENT
    assert job.scheduled_post.sent_at == NOW
    assert job.scheduled_post.external_id == "t3_xyz"


@pytest.mark.unit
def test_failure_with_attempts_left_goes_back_to_pending():
    job = make_job(ScheduleJobStatus.QUEUED, locked_at=NOW, locked_by="worker-a")
    decision = decide_retry(job.attempts, job.max_attempts, job.retry_backoff_seconds, "timeout", now=NOW)

    sm.apply_failure(job, decision, now=NOW)

    assert job.status == ScheduleJobStatus.PENDING
    assert job.attempts == 1
    assert job.retry_at == NOW + timedelta(seconds=60)
    assert job.run_at == job.retry_at
    assert job.last_error == "timeout"
    assert job.locked_at is None and job.locked_by is None
    assert job.scheduled_post.status == ScheduledPostStatus.PENDING


@pytest.mark.unit
def test_failure_on_last_attempt_is_terminal():
    job = make_job(ScheduleJobStatus.QUEUED, attempts=2, locked_at=NOW, locked_by="worker-a")
    decision = decide_retry(job.attempts, job.max_attempts, job.retry_backoff_seconds, "timeout", now=NOW)

    sm.apply_failure(job, decision, now=NOW)

    assert job.status == ScheduleJobStatus.FAILED
    assert job.attempts == 3
    assert job.retry_at is None
    assert job.last_error == "timeout"
    assert job.scheduled_post.status == ScheduledPostStatus.FAILED
    assert job.scheduled_post.error_message == "timeout"


@pytest.mark.unit
@pytest.mark.parametrize(
    "action",
    [JobAction.SUCCEED, JobAction.RETRY, JobAction.FAIL],
)
def test_outcomes_require_a_running_job(action):
    for status in (ScheduleJobStatus.PENDING, ScheduleJobStatus.CANCELLED, ScheduleJobStatus.SUCCEEDED):
        assert sm.can_transition(status, action) is False
    assert sm.can_transition(ScheduleJobStatus.QUEUED, action) is True


@pytest.mark.unit
def test_jobs_without_post_transition_cleanly():
    job = make_job(ScheduleJobStatus.PENDING, with_post=False)
    sm.apply_cancel(job, reason="no longer needed", now=NOW)
    assert job.status == ScheduleJobStatus.CANCELLED
    assert job.last_error == "no longer needed"
