"""Periodic job scheduler: cron-driven fallback triggers.

Holds a fixed set of jobs (channel renewal, fallback resync, task-tracker
sync).  Each ``tick()`` evaluates the cron expressions via croniter and runs
every due job serially; a failing job is logged and its next run is still
advanced.  ``start()`` runs ticks on a background task until ``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from croniter import croniter
from opentelemetry import trace

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 30.0


def _next_run(cron: str, *, now: datetime) -> datetime:
    """Compute the next run time for a cron expression after *now* (UTC)."""
    return croniter(cron, now).get_next(datetime).replace(tzinfo=UTC)


@dataclass
class ScheduledJob:
    name: str
    cron: str
    fn: Callable[[], Awaitable[Any]]
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_error: str | None = field(default=None, repr=False)


class FallbackScheduler:
    def __init__(self, *, tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._tick_interval = tick_interval_seconds
        self._task: asyncio.Task[None] | None = None

    def add_job(
        self, name: str, cron: str, fn: Callable[[], Awaitable[Any]], *, now: datetime | None = None
    ) -> ScheduledJob:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for job {name!r}: {cron!r}")
        job = ScheduledJob(name=name, cron=cron, fn=fn)
        job.next_run_at = _next_run(cron, now=now or datetime.now(UTC))
        self._jobs[name] = job
        return job

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    async def tick(self, *, now: datetime | None = None) -> int:
        """Run every due job; returns the number of jobs that completed without error.

        Creates a ``calsync.scheduler.tick`` span with attributes ``jobs_due``
        and ``jobs_run``.
        """
        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.scheduler.tick") as span:
            now = now or datetime.now(UTC)
            due = [
                job
                for job in self._jobs.values()
                if job.next_run_at is not None and job.next_run_at <= now
            ]
            span.set_attribute("jobs_due", len(due))

            completed = 0
            for job in due:
                try:
                    await job.fn()
                    job.last_error = None
                    completed += 1
                    logger.info("Ran scheduled job: %s", job.name)
                except Exception as exc:
                    logger.exception("Scheduled job failed: %s", job.name)
                    job.last_error = str(exc)
                # Always advance, whether the job succeeded or failed
                job.last_run_at = now
                job.next_run_at = _next_run(job.cron, now=now)

            span.set_attribute("jobs_run", completed)
            return completed

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="calsync-scheduler")
        logger.info("Started scheduler with jobs: %s", ", ".join(self._jobs) or "<none>")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._tick_interval)
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
        except asyncio.CancelledError:
            logger.debug("Scheduler loop cancelled")
            raise
