"""Dispatcher for scheduled jobs.

Polls the schedule_jobs table, claims due jobs through a conditional UPDATE
and executes them. Any number of dispatchers may run side by side; they
coordinate through the database only, including the per-window rate limit
which counts attempts recorded by every worker.

Usage:
    python -m app.workers.schedule_job_dispatcher --once
    python -m app.workers.schedule_job_dispatcher --loop --sleep 5
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import secrets
import signal
import socket
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.session import async_session_maker, get_async_session_context
from app.repositories.schedule_job_attempt_repository import ScheduleJobAttemptRepository
from app.services.post_publisher import PostPublisher
from app.services.schedule_job_execution_service import ScheduleJobExecutionService
from app.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"scheduler-{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


class ScheduleJobDispatcher:
    """Poll, claim and execute due schedule jobs."""

    def __init__(
        self,
        worker_id: Optional[str] = None,
        *,
        publisher: Optional[PostPublisher] = None,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        poll_interval: Optional[float] = None,
        max_batch: Optional[int] = None,
        rate_window_seconds: Optional[int] = None,
        max_per_window: Optional[int] = None,
        lease_timeout_seconds: Optional[int] = None,
    ) -> None:
        self.worker_id = worker_id or default_worker_id()
        self.session_maker = session_maker
        self.poll_interval = poll_interval if poll_interval is not None else settings.SCHEDULER_POLL_INTERVAL_SECONDS
        self.max_batch = max_batch if max_batch is not None else settings.SCHEDULER_MAX_BATCH
        self.rate_window_seconds = rate_window_seconds or settings.SCHEDULER_RATE_WINDOW_SECONDS
        self.max_per_window = max_per_window if max_per_window is not None else settings.SCHEDULER_MAX_PER_WINDOW
        self.execution = ScheduleJobExecutionService(
            self.worker_id,
            publisher=publisher,
            session_maker=session_maker,
            lease_timeout_seconds=lease_timeout_seconds,
        )
        self._stop_event = asyncio.Event()

    def request_stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def within_rate_limit(self, now: Optional[datetime] = None) -> bool:
        """True while fewer than max_per_window attempts started in the current window."""
        now = ensure_utc(now) if now is not None else utc_now()
        since = now - timedelta(seconds=self.rate_window_seconds)
        async with get_async_session_context(self.session_maker) as db:
            started = await ScheduleJobAttemptRepository(db).count_started_since(since)
        return started < self.max_per_window

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Claim and execute up to max_batch jobs. Returns how many jobs were handled."""
        processed = 0
        while processed < self.max_batch and not self.stopping:
            if not await self.within_rate_limit(now):
                logger.info(
                    "Worker %s paused: %d attempts started in the last %ss",
                    self.worker_id,
                    self.max_per_window,
                    self.rate_window_seconds,
                )
                break

            claimed = await self.execution.claim_next(now)
            if claimed is None:
                break

            outcome = await self.execution.run(claimed)
            logger.info("Worker %s finished schedule job %s: %s", self.worker_id, claimed.job_id, outcome.value)
            processed += 1
        return processed

    async def run_forever(self) -> None:
        """Poll until request_stop(), sleeping poll_interval between idle ticks."""
        logger.info("Schedule dispatcher %s starting", self.worker_id)
        while not self.stopping:
            try:
                processed = await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Schedule dispatcher %s tick failed", self.worker_id)
                processed = 0

            if processed >= self.max_batch:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Schedule dispatcher %s stopped", self.worker_id)


def install_signal_handlers(dispatcher: ScheduleJobDispatcher) -> None:
    """Stop the loop gracefully on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def _handle(signum: int) -> None:
        logger.info("Worker %s received signal %s, shutting down gracefully...", dispatcher.worker_id, signum)
        dispatcher.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle, sig)
        except NotImplementedError:
            # Windows event loops: fall back to the synchronous handler
            signal.signal(sig, lambda signum, _frame: _handle(signum))


async def run_dispatcher(loop_mode: bool, sleep_seconds: float, worker_id: Optional[str] = None) -> int:
    dispatcher = ScheduleJobDispatcher(worker_id=worker_id, poll_interval=sleep_seconds)
    if not loop_mode:
        processed = await dispatcher.run_once()
        logger.info("Worker %s processed %d job(s)", dispatcher.worker_id, processed)
        return 0

    install_signal_handlers(dispatcher)
    await dispatcher.run_forever()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Scheduled post dispatcher")
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")
    parser.add_argument("--loop", action="store_true", help="Run continuously")
    parser.add_argument(
        "--sleep",
        type=float,
        default=settings.SCHEDULER_POLL_INTERVAL_SECONDS,
        help="Sleep seconds between polls when looping",
    )
    parser.add_argument("--worker-id", default=None, help="Override the generated worker id")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    loop_mode = args.loop and not args.once
    return asyncio.run(run_dispatcher(loop_mode=loop_mode, sleep_seconds=args.sleep, worker_id=args.worker_id))


if __name__ == "__main__":
    raise SystemExit(main())
