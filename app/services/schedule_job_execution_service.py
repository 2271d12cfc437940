"""
Execution of claimed schedule jobs.

Each step runs in its own short transaction: claim (plus attempt open),
the side effect with no transaction held, then outcome reporting. The lease
is what keeps other workers away while the side effect runs. An outcome is
only applied while this worker still holds the lease; otherwise it is
recorded on the attempt and discarded.
"""

import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.session import async_session_maker, get_async_session_context
from app.models.schedule_job import (
    PUBLISH_POST_JOB_TYPE,
    ScheduledPostStatus,
    ScheduleJob,
    ScheduleJobStatus,
)
from app.repositories.schedule_job_attempt_repository import ScheduleJobAttemptRepository
from app.repositories.schedule_job_repository import ScheduleJobRepository
from app.services import job_state_machine
from app.services.post_publisher import (
    FatalPublishError,
    PostPublisher,
    TransientPublishError,
    get_default_publisher,
)
from app.services.retry_policy import RetryDecision, decide_retry, format_error
from app.utils.payload_sanitizer import sanitize_payload
from app.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired before the worker reported an outcome"


class ExecutionOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry-scheduled"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"


@dataclass
class ClaimedJob:
    """A job this worker holds the lease on, detached from its session."""

    job: ScheduleJob
    attempt_id: Optional[UUID] = None
    attempt_number: Optional[int] = None
    # Set when the claim itself settled the job and nothing should run
    settled: Optional[ExecutionOutcome] = None

    @property
    def job_id(self) -> UUID:
        return self.job.id


JobHandler = Callable[[ScheduleJob], Awaitable[Dict[str, Any]]]


class ScheduleJobExecutionService:
    """Claims, runs and reports schedule jobs for one worker."""

    def __init__(
        self,
        worker_id: str,
        publisher: Optional[PostPublisher] = None,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        lease_timeout_seconds: Optional[int] = None,
    ) -> None:
        self.worker_id = worker_id
        self.publisher = publisher or get_default_publisher()
        self.session_maker = session_maker
        self.lease_timeout_seconds = lease_timeout_seconds or settings.SCHEDULER_LEASE_TIMEOUT_SECONDS
        self.handlers: Dict[str, JobHandler] = {
            PUBLISH_POST_JOB_TYPE: self._publish_post,
        }

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[ClaimedJob]:
        """Claim the next due job and open an attempt for it."""
        now = ensure_utc(now) if now is not None else utc_now()
        async with get_async_session_context(self.session_maker) as db:
            repo = ScheduleJobRepository(db)
            job = await repo.claim_next_job(self.worker_id, now, self.lease_timeout_seconds)
            if job is None:
                return None
            return await self._begin(db, job, now)

    async def claim(self, job_id: UUID, now: Optional[datetime] = None) -> Optional[ClaimedJob]:
        """Claim a specific job. None when it is not claimable or another worker got it first."""
        now = ensure_utc(now) if now is not None else utc_now()
        async with get_async_session_context(self.session_maker) as db:
            repo = ScheduleJobRepository(db)
            job = await repo.claim_job(job_id, self.worker_id, now, self.lease_timeout_seconds)
            if job is None:
                return None
            return await self._begin(db, job, now)

    async def _begin(self, db: AsyncSession, job: ScheduleJob, now: datetime) -> ClaimedJob:
        attempts = ScheduleJobAttemptRepository(db)

        # Attempts left open by a worker whose lease expired count as failures
        stale = await attempts.list_open(job.id)
        if stale:
            for attempt in stale:
                await attempts.finish_attempt(attempt, error=LEASE_EXPIRED_ERROR, finished_at=now)
            job.attempts = min(job.attempts + len(stale), job.max_attempts)
            job.last_error = LEASE_EXPIRED_ERROR
            logger.warning(
                "Worker %s closed %d stale attempt(s) on schedule job %s (attempts %d/%d)",
                self.worker_id,
                len(stale),
                job.id,
                job.attempts,
                job.max_attempts,
            )
            if job.attempts >= job.max_attempts:
                decision = RetryDecision(
                    attempts=job.attempts,
                    terminal=True,
                    retry_at=None,
                    last_error=LEASE_EXPIRED_ERROR,
                )
                job_state_machine.apply_failure(job, decision, now=now)
                await db.flush()
                logger.error("Schedule job %s failed: retry budget exhausted by expired leases", job.id)
                return ClaimedJob(job=job, settled=ExecutionOutcome.FAILED)

        post = job.scheduled_post
        if post is not None and post.status == ScheduledPostStatus.CANCELLED:
            job_state_machine.apply_post_cancelled(job, now=now)
            await db.flush()
            logger.info("Schedule job %s cancelled: its post was cancelled", job.id)
            return ClaimedJob(job=job, settled=ExecutionOutcome.CANCELLED)

        job_state_machine.apply_claim_to_post(post, now=now)
        attempt = await attempts.open_attempt(job.id, self.worker_id, started_at=now)
        await db.flush()
        return ClaimedJob(job=job, attempt_id=attempt.id, attempt_number=attempt.attempt_number)

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    async def extend_lease(self, job_id: UUID, now: Optional[datetime] = None) -> bool:
        async with get_async_session_context(self.session_maker) as db:
            return await ScheduleJobRepository(db).extend_lease(job_id, self.worker_id, now)

    async def _heartbeat(self, job_id: UUID) -> None:
        interval = max(self.lease_timeout_seconds / 3, 1.0)
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.extend_lease(job_id)
            except SQLAlchemyError:
                logger.exception("Worker %s failed to extend lease on schedule job %s", self.worker_id, job_id)
                continue
            if not held:
                logger.warning("Worker %s no longer holds the lease on schedule job %s", self.worker_id, job_id)
                return

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _publish_post(self, job: ScheduleJob) -> Dict[str, Any]:
        post = job.scheduled_post
        if post is None:
            raise FatalPublishError("Scheduled post missing from job payload")
        return await self.publisher.publish(job, post)

    async def execute(self, claimed: ClaimedJob) -> Dict[str, Any]:
        """Run the side effect for a claimed job. Raises publish errors on failure."""
        handler = self.handlers.get(claimed.job.job_type)
        if handler is None:
            raise FatalPublishError(f"Unsupported job type: {claimed.job.job_type}")
        return await handler(claimed.job)

    async def run(self, claimed: ClaimedJob) -> ExecutionOutcome:
        """Execute a claimed job under a lease heartbeat and report the outcome."""
        if claimed.settled is not None:
            return claimed.settled

        logger.info(
            "Worker %s running schedule job %s (attempt %s)",
            self.worker_id,
            claimed.job_id,
            claimed.attempt_number,
        )
        result: Dict[str, Any] = {}
        failure: Optional[BaseException] = None
        fatal = False

        heartbeat = asyncio.create_task(self._heartbeat(claimed.job_id))
        try:
            result = await self.execute(claimed)
        except FatalPublishError as exc:
            logger.warning("Schedule job %s failed permanently: %s", claimed.job_id, exc)
            failure, fatal = exc, True
        except TransientPublishError as exc:
            logger.warning("Schedule job %s failed, will retry if attempts remain: %s", claimed.job_id, exc)
            failure = exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error running schedule job %s", claimed.job_id)
            failure = exc
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

        if failure is not None:
            return await self.report_failure(claimed, failure, fatal=fatal)
        return await self.report_success(claimed, result)

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    def _lost_lease_reason(self, job: Optional[ScheduleJob]) -> Optional[str]:
        if job is None:
            return "job no longer exists"
        if job.status != ScheduleJobStatus.QUEUED:
            return f"job is {ScheduleJobStatus(job.status).value}"
        if job.locked_by != self.worker_id:
            return "lease is held by another worker" if job.locked_by else "lease was released"
        return None

    async def _discard(
        self,
        attempts: ScheduleJobAttemptRepository,
        claimed: ClaimedJob,
        reason: str,
        now: datetime,
        error: Optional[str] = None,
    ) -> ExecutionOutcome:
        attempt = await attempts.get(claimed.attempt_id) if claimed.attempt_id else None
        if attempt is not None:
            await attempts.finish_attempt(
                attempt,
                error=error,
                result={"discarded": True, "reason": reason},
                finished_at=now,
            )
        logger.info(
            "Worker %s discarded outcome of schedule job %s: %s",
            self.worker_id,
            claimed.job_id,
            reason,
        )
        return ExecutionOutcome.DISCARDED

    async def report_success(
        self,
        claimed: ClaimedJob,
        result: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionOutcome:
        now = ensure_utc(now) if now is not None else utc_now()
        async with get_async_session_context(self.session_maker) as db:
            repo = ScheduleJobRepository(db)
            attempts = ScheduleJobAttemptRepository(db)

            job = await repo.get_by_id(claimed.job_id, for_update=True)
            reason = self._lost_lease_reason(job)
            if reason:
                return await self._discard(attempts, claimed, reason, now)

            safe_result = sanitize_payload(result or {})
            job_state_machine.apply_success(job, safe_result, now=now)
            attempt = await attempts.get(claimed.attempt_id) if claimed.attempt_id else None
            if attempt is not None:
                await attempts.finish_attempt(attempt, result=safe_result, finished_at=now)
            await db.flush()

        logger.info("Schedule job %s succeeded on worker %s", claimed.job_id, self.worker_id)
        return ExecutionOutcome.SUCCEEDED

    async def report_failure(
        self,
        claimed: ClaimedJob,
        error: object,
        fatal: bool = False,
        now: Optional[datetime] = None,
    ) -> ExecutionOutcome:
        now = ensure_utc(now) if now is not None else utc_now()
        async with get_async_session_context(self.session_maker) as db:
            repo = ScheduleJobRepository(db)
            attempts = ScheduleJobAttemptRepository(db)

            job = await repo.get_by_id(claimed.job_id, for_update=True)
            reason = self._lost_lease_reason(job)
            if reason:
                return await self._discard(attempts, claimed, reason, now, error=format_error(error))

            decision = decide_retry(
                job.attempts,
                job.max_attempts,
                job.retry_backoff_seconds,
                error,
                fatal=fatal,
                now=now,
            )
            job_state_machine.apply_failure(job, decision, now=now)
            attempt = await attempts.get(claimed.attempt_id) if claimed.attempt_id else None
            if attempt is not None:
                await attempts.finish_attempt(attempt, error=decision.last_error, finished_at=now)
            await db.flush()

        if decision.terminal:
            logger.error(
                "Schedule job %s failed after %d/%d attempts: %s",
                claimed.job_id,
                decision.attempts,
                job.max_attempts,
                decision.last_error,
            )
            return ExecutionOutcome.FAILED

        logger.info(
            "Schedule job %s retry %d/%d scheduled for %s",
            claimed.job_id,
            decision.attempts,
            job.max_attempts,
            decision.retry_at.isoformat() if decision.retry_at else None,
        )
        return ExecutionOutcome.RETRY_SCHEDULED
