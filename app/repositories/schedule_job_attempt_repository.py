"""
Attempt repository - append-only execution history for schedule jobs.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.models.schedule_job import ScheduleJobAttempt
from app.utils.time import utc_now


class ScheduleJobAttemptRepository:
    """Repository for ScheduleJobAttempt rows. Rows are only ever inserted and closed once."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, attempt_id: UUID) -> Optional[ScheduleJobAttempt]:
        return await self.db.get(ScheduleJobAttempt, attempt_id)

    async def next_attempt_number(self, job_id: UUID) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(ScheduleJobAttempt.attempt_number), 0)).where(
                ScheduleJobAttempt.job_id == job_id
            )
        )
        return int(result.scalar_one()) + 1

    async def open_attempt(
        self,
        job_id: UUID,
        worker_id: str,
        started_at: Optional[datetime] = None,
    ) -> ScheduleJobAttempt:
        """Start a new attempt numbered after the highest existing one."""
        attempt = ScheduleJobAttempt(
            job_id=job_id,
            attempt_number=await self.next_attempt_number(job_id),
            worker_id=worker_id,
            started_at=started_at or utc_now(),
        )
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def list_open(self, job_id: UUID) -> List[ScheduleJobAttempt]:
        """Attempts that were started but never reported (crashed or lost workers)."""
        result = await self.db.execute(
            select(ScheduleJobAttempt)
            .where(
                ScheduleJobAttempt.job_id == job_id,
                ScheduleJobAttempt.finished_at.is_(None),
            )
            .order_by(ScheduleJobAttempt.attempt_number.asc())
        )
        return list(result.scalars().all())

    async def finish_attempt(
        self,
        attempt: ScheduleJobAttempt,
        *,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        finished_at: Optional[datetime] = None,
    ) -> bool:
        """Close an attempt. Returns False when it was already closed by someone else."""
        if attempt.finished_at is not None:
            return False
        attempt.finished_at = finished_at or utc_now()
        attempt.error = error
        attempt.result = result
        await self.db.flush()
        return True

    async def list_recent(self, job_id: UUID, limit: int = 10) -> List[ScheduleJobAttempt]:
        """Most recent attempts first."""
        result = await self.db.execute(
            select(ScheduleJobAttempt)
            .where(ScheduleJobAttempt.job_id == job_id)
            .order_by(ScheduleJobAttempt.attempt_number.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_recent_for_jobs(
        self,
        job_ids: Sequence[UUID],
        per_job: int = 5,
    ) -> Dict[UUID, List[ScheduleJobAttempt]]:
        """Up to per_job most recent attempts for each job, in a single windowed query."""
        if not job_ids:
            return {}

        ranked = (
            select(
                ScheduleJobAttempt,
                func.row_number()
                .over(
                    partition_by=ScheduleJobAttempt.job_id,
                    order_by=ScheduleJobAttempt.attempt_number.desc(),
                )
                .label("position"),
            )
            .where(ScheduleJobAttempt.job_id.in_(list(job_ids)))
            .subquery()
        )
        attempt_row = aliased(ScheduleJobAttempt, ranked)
        result = await self.db.execute(
            select(attempt_row)
            .where(ranked.c.position <= per_job)
            .order_by(ranked.c.job_id, ranked.c.attempt_number.desc())
        )

        grouped: Dict[UUID, List[ScheduleJobAttempt]] = defaultdict(list)
        for attempt in result.scalars().all():
            grouped[attempt.job_id].append(attempt)
        return dict(grouped)

    async def count_started_since(self, since: datetime) -> int:
        """Attempts started by any worker since the given time."""
        result = await self.db.execute(
            select(func.count()).select_from(ScheduleJobAttempt).where(ScheduleJobAttempt.started_at >= since)
        )
        return int(result.scalar_one())
