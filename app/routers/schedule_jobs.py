"""
Schedule jobs router - API endpoints for scheduled posts.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import Principal, get_current_principal, get_db
from app.schemas.schedule_job import (
    ScheduleJobCreate,
    ScheduleJobEnvelope,
    ScheduleJobListResponse,
    ScheduleJobUpdate,
)
from app.services.schedule_job_service import ScheduleJobService, parse_status_filters

router = APIRouter(prefix="/schedule/jobs", tags=["schedule"])


@router.get("", response_model=ScheduleJobListResponse)
async def list_jobs(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: Optional[int] = Query(None),
):
    """
    List the caller's jobs.

    `status` is a comma separated list; unknown values are ignored. `limit`
    falls back to the default when missing or not positive and is capped
    at the maximum.
    """
    service = ScheduleJobService(db)
    jobs = await service.list_jobs(
        principal.user_id,
        statuses=parse_status_filters(status_filter),
        limit=limit,
    )
    return ScheduleJobListResponse(jobs=jobs)


@router.post("", response_model=ScheduleJobEnvelope, status_code=status.HTTP_201_CREATED)
async def create_job(
    data: ScheduleJobCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Create a pending job (and its post) inside the caller's scheduling window."""
    service = ScheduleJobService(db)
    job = await service.create_job(principal, data)
    await db.commit()
    return ScheduleJobEnvelope(job=job)


@router.get("/{job_id}", response_model=ScheduleJobEnvelope)
async def get_job(
    job_id: UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Get a job with its recent attempt history."""
    service = ScheduleJobService(db)
    job = await service.get_job(principal.user_id, job_id)
    return ScheduleJobEnvelope(job=job)


@router.patch("/{job_id}", response_model=ScheduleJobEnvelope)
async def update_job(
    job_id: UUID,
    data: ScheduleJobUpdate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Cancel, reschedule or force-run a job."""
    service = ScheduleJobService(db)
    job = await service.update_job(
        principal,
        job_id,
        data.action,
        run_at=data.run_at,
        reason=data.reason,
    )
    await db.commit()
    return ScheduleJobEnvelope(job=job)
