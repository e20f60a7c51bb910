# backoffice/schemas.py

# Pydantic schemas for the operational endpoints (job run state).
from __future__ import annotations
from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict


class JobStatus(BaseModel):
    name: str
    group: str
    interval_seconds: float | None = None
    next_run_at: datetime | None = None
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_duration_ms: float | None = None
    last_touched: int | None = None
    last_error: str | None = None
    run_count: int = 0
    failure_count: int = 0
    running: bool = False
    model_config = ConfigDict(from_attributes=True)


class JobsResponse(BaseModel):
    scheduler_enabled: bool
    jobs: List[JobStatus]
