"""
Pytest configuration and shared fixtures.

Database tests run against in-memory SQLite (aiosqlite) unless
TEST_DATABASE_URL points somewhere else. Tests stay synchronous and drive
their coroutines with asyncio.run, one event loop per test.
"""

import asyncio
import os
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.models.schedule_job import (
    ScheduledPost,
    ScheduledPostStatus,
    ScheduleJob,
    ScheduleJobStatus,
)
from app.services.post_publisher import PostPublisher
from app.utils.time import utc_now

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

SessionMaker = async_sessionmaker[AsyncSession]


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests, no external deps")
    config.addinivalue_line("markers", "db: requires database (in-memory SQLite by default)")
    config.addinivalue_line("markers", "server: exercises the ASGI app over HTTP")


async def _create_session_maker():
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def run_db() -> Callable[[Callable[[SessionMaker], Awaitable[Any]]], Any]:
    """Run ``scenario(session_maker)`` against a fresh schema inside its own event loop."""

    def runner(scenario: Callable[[SessionMaker], Awaitable[Any]]) -> Any:
        async def main():
            engine, session_maker = await _create_session_maker()
            try:
                return await scenario(session_maker)
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return runner


async def create_job(
    session_maker: SessionMaker,
    *,
    user_id: str = "user-1",
    with_post: bool = True,
    post_overrides: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> ScheduleJob:
    """Insert a job directly, bypassing window validation. Defaults to a job that is already due."""
    now = utc_now()
    run_at = overrides.pop("run_at", now - timedelta(seconds=5))

    async with session_maker() as db:
        post = None
        if with_post:
            post_fields = {
                "user_id": user_id,
                "title": "Weekend drop",
                "caption": "New set is live",
                "target": "test_community",
                "media_urls": ["https://cdn.example.com/a.jpg"],
                "status": ScheduledPostStatus.PENDING,
                "scheduled_for": run_at,
            }
            post_fields.update(post_overrides or {})
            post = ScheduledPost(**post_fields)
            db.add(post)
            await db.flush()

        fields = {
            "user_id": user_id,
            "job_type": "publish-post",
            "status": ScheduleJobStatus.PENDING,
            "priority": 0,
            "run_at": run_at,
            "attempts": 0,
            "max_attempts": 3,
            "retry_backoff_seconds": 60,
            "payload": {},
        }
        fields.update(overrides)
        job = ScheduleJob(
            scheduled_post_id=post.id if post is not None else None,
            scheduled_post=post,
            **fields,
        )
        db.add(job)
        await db.commit()
        return job


async def load_job(session_maker: SessionMaker, job_id: uuid.UUID) -> ScheduleJob:
    async with session_maker() as db:
        job = await db.get(ScheduleJob, job_id)
        assert job is not None
        return job


class RecordingPublisher(PostPublisher):
    """Publisher double: records calls, then returns a result or raises the queued errors in order."""

    def __init__(self, *errors: BaseException, result: Optional[Dict[str, Any]] = None) -> None:
        self.errors = list(errors)
        self.result = result if result is not None else {"externalId": "t3_abc123"}
        self.calls = []
        self.before_return: Optional[Callable[[], Awaitable[None]]] = None

    async def publish(self, job, post):
        self.calls.append((job.id, post.id))
        if self.before_return is not None:
            await self.before_return()
        if self.errors:
            raise self.errors.pop(0)
        return dict(self.result)


@pytest.fixture
def job_factory():
    return create_job


@pytest.fixture
def job_loader():
    return load_job


@pytest.fixture
def publisher_cls():
    return RecordingPublisher
