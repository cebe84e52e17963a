"""Cron runner -- asyncio loop that fires named jobs on their cron schedule.

Every `check_interval` seconds:
1. Takes the current minute in the configured timezone
2. Finds enabled jobs whose cron expression matches and that have not
   fired this minute yet
3. Starts each due job in its own task

A job never overlaps itself. A tick that finds the job still running
skips it; a manual `run_job` waits for the running invocation to finish
and then runs. Code that runs a job body directly holds `guard(name)`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable
from zoneinfo import ZoneInfo

from core.models.jobs import JobResult, JobState
from scheduler.cron import CronExpression

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class UnknownJobError(KeyError):
    pass


class _Job:
    def __init__(self, state: JobState, func: JobFunc) -> None:
        self.state = state
        self.func = func
        self.cron = CronExpression(state.cron_expression)
        self.lock = asyncio.Lock()
        self.last_fired_minute: datetime | None = None


class CronRunner:
    """Holds named jobs and fires them on schedule.

    Usage:
        runner = CronRunner(check_interval=30, timezone="UTC")
        runner.add_job("reminders", "0 * * * *", service.process_reminders)
        await runner.start()
    """

    def __init__(self, check_interval: float = 30, timezone: str = "UTC") -> None:
        self._check_interval = check_interval
        self._tz = ZoneInfo(timezone)
        self._jobs: dict[str, _Job] = {}
        self._running = False
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        expression: str,
        func: JobFunc,
        enabled: bool = True,
        description: str = "",
    ) -> JobState:
        """Register a job; raises CronError for a bad expression."""
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already registered")
        state = JobState(name=name, cron_expression=expression, enabled=enabled, description=description)
        self._jobs[name] = _Job(state, func)
        logger.debug("Added job %s (%s)%s", name, expression, "" if enabled else " [disabled]")
        return state

    def job_names(self, enabled_only: bool = True) -> list[str]:
        return [name for name, job in self._jobs.items() if job.state.enabled or not enabled_only]

    def states(self) -> list[JobState]:
        return [job.state.model_copy() for job in self._jobs.values()]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the loop. Calling it while running does nothing."""
        if self._running:
            logger.warning("Cron runner already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Cron runner started with %d job(s) (check every %ss, tz=%s)",
            len(self.job_names()), self._check_interval, self._tz.key,
        )

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight jobs to finish. Safe to call twice."""
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._inflight:
            logger.info("Waiting for %d running job(s) to finish", len(self._inflight))
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._inflight.clear()
        logger.info("Cron runner stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                self.tick(datetime.now(timezone.utc))
            except Exception:
                logger.exception("Error in cron loop")
            await asyncio.sleep(self._check_interval)

    def tick(self, now: datetime) -> list[str]:
        """Start every job due at `now`; returns the names started."""
        local = now.astimezone(self._tz).replace(second=0, microsecond=0)
        started = []
        for name, job in self._jobs.items():
            if not job.state.enabled or not job.cron.matches(local):
                continue
            # Don't fire twice in the same minute
            if job.last_fired_minute == local:
                continue
            job.last_fired_minute = local
            if job.lock.locked():
                job.state.skipped_overlaps += 1
                job.state.last_status = "skipped"
                logger.warning("Skipping %s: previous run still in progress", name)
                continue
            task = asyncio.create_task(self._execute(job))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            started.append(name)
        return started

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(self, name: str) -> JobResult:
        """Run a job now, waiting for any in-progress run of it first."""
        return await self._execute(self._job(name))

    @asynccontextmanager
    async def guard(self, name: str) -> AsyncIterator[JobState]:
        """Hold a job's overlap lock around work started outside the runner.

        Cron ticks skip the job and `run_job` waits while the block runs.
        """
        job = self._job(name)
        async with job.lock:
            job.state.running = True
            try:
                yield job.state
            finally:
                job.state.running = False

    def _job(self, name: str) -> _Job:
        job = self._jobs.get(name)
        if job is None:
            raise UnknownJobError(f"No job named '{name}'. Available: {sorted(self._jobs)}")
        return job

    async def _execute(self, job: _Job) -> JobResult:
        async with job.lock:
            state = job.state
            state.running = True
            started = datetime.now(timezone.utc)
            logger.info("Running job %s", state.name)
            try:
                value = await job.func()
            except Exception as exc:
                logger.exception("Job %s failed", state.name)
                result = JobResult(
                    job=state.name, status="error", started_at=started,
                    finished_at=datetime.now(timezone.utc), error=str(exc) or exc.__class__.__name__,
                )
            else:
                result = JobResult(
                    job=state.name, started_at=started, finished_at=datetime.now(timezone.utc), value=value,
                )
                logger.info("Job %s completed: %s", state.name, value)
            finally:
                state.running = False

            state.last_run_at = started
            state.last_status = result.status
            state.last_error = result.error
            state.run_count += 1
            return result
