# backoffice/services/scheduler.py

# Generic interval scheduler for background jobs.
# Every job fires once at startup, then again `interval` after its previous run *completed*.
# Due jobs run one after another, each with its own AsyncSession and its own try/except,
# so a failing job is logged and the loop moves on. Cancellation is never swallowed.

from __future__ import annotations
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, List

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backoffice.clock import Clock

logger = logging.getLogger(__name__)

# failures that are expected to clear up by the next run
TRANSIENT_ERRORS = (OperationalError, asyncio.TimeoutError)


class BackgroundJob(ABC):
    """A recurring unit of maintenance work.

    Jobs keep no state between runs: everything they need comes from the
    session handed to `execute`. They return the number of records touched
    (for the run log) and commit at most once, at the end.
    """

    name: str
    interval: timedelta

    @abstractmethod
    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int | None:
        ...


@dataclass
class JobState:
    job: BackgroundJob
    next_run_at: datetime | None = None
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_duration_ms: float | None = None
    last_touched: int | None = None
    last_error: str | None = None
    run_count: int = 0
    failure_count: int = 0
    running: bool = False


async def run_job_safely(
    state: JobState,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock,
    stopping: asyncio.Event,
) -> None:
    """Run one job inside its own session and fault boundary, updating `state`."""
    job = state.job
    state.running = True
    state.last_started_at = clock.now()
    t0 = time.perf_counter()
    logger.info("Background job %s started at %s.", job.name, state.last_started_at.isoformat())
    try:
        async with session_factory() as session:
            touched = await job.execute(session, stopping)
    except TRANSIENT_ERRORS as exc:
        state.failure_count += 1
        state.last_error = f"{type(exc).__name__}: {exc}"
        logger.warning(
            "Background job %s hit a transient error after %.0f ms: %s",
            job.name, (time.perf_counter() - t0) * 1000, state.last_error,
        )
    except Exception as exc:
        state.failure_count += 1
        state.last_error = f"{type(exc).__name__}: {exc}"
        logger.exception(
            "Background job %s failed after %.0f ms.", job.name, (time.perf_counter() - t0) * 1000
        )
    else:
        state.last_error = None
        state.last_touched = touched or 0
        logger.info(
            "Background job %s finished in %.0f ms, touched %d record(s).",
            job.name, (time.perf_counter() - t0) * 1000, state.last_touched,
        )
    finally:
        state.running = False
        state.run_count += 1
        state.last_finished_at = clock.now()
        state.last_duration_ms = round((time.perf_counter() - t0) * 1000, 3)


class JobScheduler:
    def __init__(
        self,
        jobs: Iterable[BackgroundJob],
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
    ):
        self._states: List[JobState] = []
        seen: set[str] = set()
        for job in jobs:
            if job.name in seen:
                raise ValueError(f"Duplicate background job name: {job.name}")
            seen.add(job.name)
            self._states.append(JobState(job))
        self._session_factory = session_factory
        self._clock = clock
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> asyncio.Event:
        return self._stopping

    def stop(self) -> None:
        self._stopping.set()

    def snapshot(self) -> List[JobState]:
        return [replace(s) for s in self._states]

    async def run(self) -> None:
        if not self._states:
            logger.info("JobScheduler: no jobs registered, nothing to run.")
            return

        now = self._clock.now()
        for state in self._states:
            state.next_run_at = now  # first run happens right away

        logger.info("JobScheduler: started with %d jobs.", len(self._states))
        while not self._stopping.is_set():
            next_due = min(s.next_run_at for s in self._states)
            delay = (next_due - self._clock.now()).total_seconds()
            if delay > 0 and await self._sleep(delay):
                break
            await self.run_pending()
        logger.info("JobScheduler: stopping.")

    async def run_pending(self) -> int:
        """One tick: run every job whose next_run_at has passed. Returns how many ran."""
        now = self._clock.now()
        due = [s for s in self._states if s.next_run_at is None or s.next_run_at <= now]
        ran = 0
        for state in due:
            if self._stopping.is_set():
                break
            await run_job_safely(state, self._session_factory, self._clock, self._stopping)
            state.next_run_at = self._clock.now() + state.job.interval
            ran += 1
        return ran

    async def run_once(self, job: BackgroundJob) -> JobState:
        """Run a job that is not on the schedule (e.g. a startup backfill)."""
        state = JobState(job)
        await run_job_safely(state, self._session_factory, self._clock, self._stopping)
        return state

    async def _sleep(self, seconds: float) -> bool:
        """Sleep until the timeout or stop(); True means stop was requested."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
