# Unit tests for the interval scheduler and its fault boundary.
# Uses fake jobs and a ManualClock: first run at startup, rescheduling from completion time,
# one failing job does not stop the others, cancellation propagates, stop() ends run().

import asyncio
import pytest
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from backoffice.clock import ManualClock
from backoffice.services.scheduler import BackgroundJob, JobScheduler, run_job_safely, JobState

from conftest import dt


class FakeJob(BackgroundJob):
    def __init__(self, name, interval=timedelta(minutes=5), clock=None, takes=timedelta(0), error=None):
        self.name = name
        self.interval = interval
        self.clock = clock
        self.takes = takes
        self.error = error
        self.calls = 0

    async def execute(self, session, stopping):
        self.calls += 1
        if self.clock is not None:
            self.clock.advance(self.takes)
        if self.error is not None:
            raise self.error
        return 3


def _state(scheduler, name):
    return next(s for s in scheduler.snapshot() if s.job.name == name)


def test_duplicate_job_names_are_rejected(session_factory, clock):
    with pytest.raises(ValueError):
        JobScheduler([FakeJob("A"), FakeJob("A")], session_factory, clock)


async def test_all_jobs_run_on_first_tick(session_factory, clock):
    a, b = FakeJob("A"), FakeJob("B")
    scheduler = JobScheduler([a, b], session_factory, clock)
    assert await scheduler.run_pending() == 2
    assert (a.calls, b.calls) == (1, 1)
    assert _state(scheduler, "A").last_touched == 3


async def test_next_run_counts_from_completion(session_factory):
    clock = ManualClock(dt(2024, 3, 14, 12))
    slow = FakeJob("Slow", interval=timedelta(minutes=5), clock=clock, takes=timedelta(minutes=2))
    scheduler = JobScheduler([slow], session_factory, clock)

    await scheduler.run_pending()
    assert _state(scheduler, "Slow").next_run_at == dt(2024, 3, 14, 12, 7)

    clock.set(dt(2024, 3, 14, 12, 6))
    assert await scheduler.run_pending() == 0
    clock.set(dt(2024, 3, 14, 12, 7))
    assert await scheduler.run_pending() == 1
    assert slow.calls == 2


async def test_failing_job_does_not_block_others(session_factory, clock):
    bad = FakeJob("Bad", error=RuntimeError("boom"))
    good = FakeJob("Good")
    scheduler = JobScheduler([bad, good], session_factory, clock)

    assert await scheduler.run_pending() == 2
    assert good.calls == 1
    state = _state(scheduler, "Bad")
    assert state.failure_count == 1
    assert state.last_error == "RuntimeError: boom"
    assert not state.running
    # still rescheduled like any other run
    assert state.next_run_at == clock.now() + bad.interval

    bad.error = None
    clock.advance(bad.interval)
    await scheduler.run_pending()
    state = _state(scheduler, "Bad")
    assert state.last_error is None
    assert state.run_count == 2


async def test_transient_errors_are_recorded(session_factory, clock):
    job = FakeJob("Db", error=OperationalError("SELECT 1", {}, Exception("database is locked")))
    state = JobState(job)
    await run_job_safely(state, session_factory, clock, asyncio.Event())
    assert state.failure_count == 1
    assert state.last_error.startswith("OperationalError")


async def test_cancellation_is_not_swallowed(session_factory, clock):
    job = FakeJob("Cancelled", error=asyncio.CancelledError())
    state = JobState(job)
    with pytest.raises(asyncio.CancelledError):
        await run_job_safely(state, session_factory, clock, asyncio.Event())
    assert not state.running


async def test_run_until_stopped(session_factory, clock):
    a = FakeJob("A", interval=timedelta(hours=1))
    scheduler = JobScheduler([a], session_factory, clock)
    task = asyncio.create_task(scheduler.run())

    for _ in range(100):
        if a.calls:
            break
        await asyncio.sleep(0.01)
    assert a.calls == 1

    scheduler.stop()
    await asyncio.wait_for(task, timeout=2)
    assert a.calls == 1


async def test_run_once_outside_schedule(session_factory, clock):
    scheduler = JobScheduler([], session_factory, clock)
    extra = FakeJob("Extra")
    state = await scheduler.run_once(extra)
    assert state.run_count == 1
    assert extra.calls == 1
    assert scheduler.snapshot() == []
