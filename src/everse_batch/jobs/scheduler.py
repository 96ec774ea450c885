"""Wall-clock aligned in-process job scheduler.

Usage:
    runner = AsyncJobRunner()
    runner.register(JobSchedule("alarm", interval_seconds=3600, offset_seconds=25), alarm_service.evaluate_last_hour)
    await runner.run_forever()

A job runs every ``interval_seconds``, ``offset_seconds`` after each interval
boundary counted from the UTC epoch. A job whose previous run is still in
flight is skipped for that tick, so each job has at most one run at a time.
"""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from everse_batch.settings import Settings

logger = structlog.get_logger(__name__)

JobFunc = Callable[[], Awaitable[object]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobSchedule:
    """Fixed-interval trigger aligned to the UTC epoch plus an offset."""

    name: str
    interval_seconds: int
    offset_seconds: int = 0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError(f"{self.name}: interval_seconds must be positive")
        if not 0 <= self.offset_seconds < self.interval_seconds:
            raise ValueError(f"{self.name}: offset_seconds must be in [0, interval_seconds)")

    def next_run_after(self, now: datetime) -> datetime:
        """Return the first due instant strictly after now."""
        elapsed = now.timestamp() - self.offset_seconds
        slot = math.floor(elapsed / self.interval_seconds) + 1
        return datetime.fromtimestamp(slot * self.interval_seconds + self.offset_seconds, tz=timezone.utc)


def build_schedules(settings: Settings) -> dict[str, JobSchedule]:
    """Read the job schedule table from settings."""
    return {
        name: JobSchedule(
            name=name,
            interval_seconds=getattr(settings, f"{name}_job_interval_seconds"),
            offset_seconds=getattr(settings, f"{name}_job_offset_seconds"),
        )
        for name in ("forecast", "alarm", "retention", "metered_usage", "billing")
    }


@dataclass
class _RegisteredJob:
    schedule: JobSchedule
    func: JobFunc
    next_due: datetime | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


class AsyncJobRunner:
    """Run registered jobs on their schedules until stopped."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._jobs: dict[str, _RegisteredJob] = {}
        self._stop_event = asyncio.Event()

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def register(self, schedule: JobSchedule, func: JobFunc) -> None:
        if schedule.name in self._jobs:
            raise ValueError(f"Job already registered: {schedule.name}")
        self._jobs[schedule.name] = _RegisteredJob(schedule=schedule, func=func)

    async def run_job(self, name: str) -> object | None:
        """Run one job to completion, logging its outcome.

        Exceptions are logged and swallowed here so a failing job never stops
        the runner. Returns the job's result, or None when it failed.
        """
        job = self._jobs[name]
        started = time.monotonic()
        with structlog.contextvars.bound_contextvars(job=name):
            logger.info("job_started")
            try:
                result = await job.func()
            except Exception:
                logger.exception("job_failed", duration_seconds=round(time.monotonic() - started, 3))
                return None
            logger.info("job_finished", duration_seconds=round(time.monotonic() - started, 3), result=str(result))
            return result

    def dispatch_due(self, now: datetime) -> list[str]:
        """Start every job due at or before now and advance its next due time.

        Returns:
            Names of the jobs started on this tick.
        """
        started: list[str] = []
        for name, job in self._jobs.items():
            if job.next_due is None:
                job.next_due = job.schedule.next_run_after(now)
                continue
            if now < job.next_due:
                continue
            job.next_due = job.schedule.next_run_after(now)
            if job.in_flight:
                logger.warning("job_skipped_still_running", job=name)
                continue
            job.task = asyncio.create_task(self.run_job(name), name=f"job:{name}")
            started.append(name)
        return started

    async def run_forever(self) -> None:
        logger.info("job_runner_started", jobs=self.job_names)
        self.dispatch_due(self._clock())
        while not self._stop_event.is_set():
            now = self._clock()
            self.dispatch_due(now)
            wake_at = min((job.next_due for job in self._jobs.values() if job.next_due), default=None)
            timeout = max((wake_at - self._clock()).total_seconds(), 0.0) if wake_at else 1.0
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        await self._drain()
        logger.info("job_runner_stopped")

    def stop(self) -> None:
        self._stop_event.set()

    async def _drain(self) -> None:
        pending = [job.task for job in self._jobs.values() if job.in_flight]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
