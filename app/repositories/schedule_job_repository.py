"""
Schedule job repository - database operations for ScheduleJob and its post.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from app.core.config import settings
from app.models.schedule_job import ScheduledPost, ScheduleJob, ScheduleJobStatus
from app.services.job_state_machine import claim_values
from app.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def claim_order():
    """Claim and listing order: status, then due time, then priority (higher first)."""
    return (ScheduleJob.status.asc(), ScheduleJob.run_at.asc(), ScheduleJob.priority.desc())


def claimable_predicate(now: datetime, lease_timeout_seconds: int) -> ColumnElement[bool]:
    """
    Jobs a worker may take right now.

    Due pending jobs without a live lease, plus queued jobs that are unleased
    (force-run) or whose lease went stale. Exhausted jobs are never claimable.
    """
    stale_before = now - timedelta(seconds=lease_timeout_seconds)
    lease_free = or_(ScheduleJob.locked_at.is_(None), ScheduleJob.locked_at < stale_before)

    pending_due = and_(
        ScheduleJob.status == ScheduleJobStatus.PENDING,
        ScheduleJob.run_at <= now,
        or_(ScheduleJob.retry_at.is_(None), ScheduleJob.retry_at <= now),
        lease_free,
    )
    queued_ready = and_(
        ScheduleJob.status == ScheduleJobStatus.QUEUED,
        lease_free,
    )
    return and_(or_(pending_due, queued_ready), ScheduleJob.attempts < ScheduleJob.max_attempts)


class ScheduleJobRepository:
    """Repository for ScheduleJob database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_job_with_post(
        self,
        job: ScheduleJob,
        post: Optional[ScheduledPost] = None,
    ) -> ScheduleJob:
        """Insert the post (when given) and the job in the caller's transaction."""
        if post is not None:
            self.db.add(post)
            await self.db.flush()
            job.scheduled_post_id = post.id
            job.scheduled_post = post
        self.db.add(job)
        await self.db.flush()
        return job

    async def get_by_id(self, job_id: UUID, *, for_update: bool = False) -> Optional[ScheduleJob]:
        """Load a job regardless of owner. Workers only."""
        query = select(ScheduleJob).where(ScheduleJob.id == job_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_for_user(
        self,
        user_id: str,
        job_id: UUID,
        *,
        for_update: bool = False,
    ) -> Optional[ScheduleJob]:
        """Get a job owned by user_id. Jobs of other users are invisible."""
        query = select(ScheduleJob).where(
            ScheduleJob.id == job_id,
            ScheduleJob.user_id == user_id,
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        statuses: Optional[Sequence[ScheduleJobStatus]] = None,
        limit: int = 100,
    ) -> List[ScheduleJob]:
        """List a user's jobs, most time-urgent actionable jobs first."""
        query = select(ScheduleJob).where(ScheduleJob.user_id == user_id)

        if statuses:
            query = query.where(ScheduleJob.status.in_(list(statuses)))

        query = query.order_by(*claim_order()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _claim_where(
        self,
        candidate: ColumnElement[bool],
        worker_id: str,
        now: datetime,
        lease_timeout_seconds: int,
    ) -> Optional[ScheduleJob]:
        predicate = claimable_predicate(now, lease_timeout_seconds)
        stmt = (
            update(ScheduleJob)
            .where(candidate, predicate)
            .values(**claim_values(worker_id, now))
            .returning(ScheduleJob.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        claimed_id = result.scalar_one_or_none()
        if claimed_id is None:
            return None

        logger.info("Worker %s claimed schedule job %s", worker_id, claimed_id)
        return await self.db.get(ScheduleJob, claimed_id, populate_existing=True)

    async def claim_next_job(
        self,
        worker_id: str,
        now: Optional[datetime] = None,
        lease_timeout_seconds: Optional[int] = None,
    ) -> Optional[ScheduleJob]:
        """
        Claim the next claimable job in one conditional UPDATE.

        The candidate is picked with SELECT ... FOR UPDATE SKIP LOCKED inside
        the UPDATE, and the claimable predicate is re-checked on the row being
        written, so two workers can never both take the same job.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        timeout = lease_timeout_seconds or settings.SCHEDULER_LEASE_TIMEOUT_SECONDS

        candidate_id = (
            select(ScheduleJob.id)
            .where(claimable_predicate(now, timeout))
            .order_by(*claim_order())
            .limit(1)
            .with_for_update(skip_locked=True)
            .correlate(None)
            .scalar_subquery()
        )
        return await self._claim_where(ScheduleJob.id == candidate_id, worker_id, now, timeout)

    async def claim_job(
        self,
        job_id: UUID,
        worker_id: str,
        now: Optional[datetime] = None,
        lease_timeout_seconds: Optional[int] = None,
    ) -> Optional[ScheduleJob]:
        """Compare-and-swap claim of a known job. None when it is not claimable or another worker won."""
        now = ensure_utc(now) if now is not None else utc_now()
        timeout = lease_timeout_seconds or settings.SCHEDULER_LEASE_TIMEOUT_SECONDS
        return await self._claim_where(ScheduleJob.id == job_id, worker_id, now, timeout)

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Refresh locked_at while worker_id still holds the lease."""
        now = ensure_utc(now) if now is not None else utc_now()
        stmt = (
            update(ScheduleJob)
            .where(
                ScheduleJob.id == job_id,
                ScheduleJob.status == ScheduleJobStatus.QUEUED,
                ScheduleJob.locked_by == worker_id,
            )
            .values(locked_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1
