# backoffice/api/health.py

# Health check and job status endpoints.
# /healthz → verifies DB connectivity ("SELECT 1") and reports whether the background loops are alive.
# /jobs → run state of every scheduled job and of the maintenance loop steps.

from __future__ import annotations
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.db import get_session
from backoffice.schemas import JobStatus, JobsResponse
from backoffice.services.scheduler import JobState

router = APIRouter()


def _to_status(state: JobState, group: str) -> JobStatus:
    interval = state.job.interval
    return JobStatus(
        name=state.job.name,
        group=group,
        interval_seconds=interval.total_seconds() if interval is not None else None,
        next_run_at=state.next_run_at,
        last_started_at=state.last_started_at,
        last_finished_at=state.last_finished_at,
        last_duration_ms=state.last_duration_ms,
        last_touched=state.last_touched,
        last_error=state.last_error,
        run_count=state.run_count,
        failure_count=state.failure_count,
        running=state.running,
    )


@router.get("/healthz")
async def healthz(request: Request, session: AsyncSession = Depends(get_session)):
    await session.execute(text("SELECT 1"))
    tasks = getattr(request.app.state, "tasks", [])
    return {
        "ok": True,
        "database": "ok",
        "background_tasks": {t.get_name(): not t.done() for t in tasks},
    }


@router.get("/jobs", response_model=JobsResponse)
async def jobs(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    maintenance = getattr(request.app.state, "maintenance", None)

    out: List[JobStatus] = []
    if scheduler is not None:
        out.extend(_to_status(s, "scheduler") for s in scheduler.snapshot())
    if maintenance is not None:
        out.extend(_to_status(s, "maintenance") for s in maintenance.snapshot())
    return JobsResponse(scheduler_enabled=scheduler is not None, jobs=out)
