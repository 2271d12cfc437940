"""Health check router."""

import logging
from pathlib import Path
from typing import Dict, Optional

from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import get_db
from app.models.schedule_job import ScheduleJob, ScheduleJobStatus

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_alembic_head() -> Optional[str]:
    project_root = Path(__file__).resolve().parents[2]
    cfg_path = project_root / "alembic.ini"
    script_location = project_root / "alembic"
    if not cfg_path.exists() or not script_location.exists():
        return None

    config = Config(str(cfg_path))
    config.set_main_option("script_location", str(script_location))
    script = ScriptDirectory.from_config(config)
    return script.get_current_head()


async def _job_counts(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(select(ScheduleJob.status, func.count()).group_by(ScheduleJob.status))
    counts = {status.value: 0 for status in ScheduleJobStatus}
    for status, count in result.all():
        counts[ScheduleJobStatus(status).value] = int(count)
    return counts


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Lightweight health endpoint with DB, alembic and queue checks."""

    db_ok = False
    alembic_current: Optional[str] = None
    alembic_head: Optional[str] = None
    jobs: Optional[Dict[str, int]] = None

    try:
        await db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)

    if db_ok:
        try:
            version_result = await db.execute(text("SELECT version_num FROM alembic_version"))
            alembic_current = version_result.scalar_one_or_none()
        except SQLAlchemyError:
            # Not migrated with alembic (e.g. tables created directly)
            await db.rollback()
            alembic_current = None

        try:
            jobs = await _job_counts(db)
        except SQLAlchemyError:
            logger.warning("Health check: schedule_jobs not readable", exc_info=True)
            await db.rollback()

    try:
        alembic_head = _load_alembic_head()
    except CommandError:
        alembic_head = None

    alembic_head_ok = bool(alembic_current and alembic_head and alembic_current == alembic_head)

    return {
        "app": settings.APP_NAME,
        "api_ok": True,
        "db_ok": db_ok,
        "alembic_head_ok": alembic_head_ok,
        "alembic_current": alembic_current,
        "alembic_head": alembic_head,
        "jobs": jobs,
    }
