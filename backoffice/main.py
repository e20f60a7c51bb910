# backoffice/main.py

# FastAPI application entrypoint for the background maintenance engine.
# On startup: creates tables, then launches the job scheduler (SLA, stats, expiry)
# and the maintenance loop as asyncio tasks, plus the optional one-shot stock backfill.
# On shutdown: signals both loops to stop and waits for them to finish.
# Root endpoint shows available API routes for quick reference.

from __future__ import annotations
import asyncio
import logging
from datetime import timedelta
from typing import List

from fastapi import FastAPI

from backoffice.api.health import router as health_router
from backoffice.clock import Clock, SystemClock
from backoffice.config import Settings, settings
from backoffice.db import SessionLocal, create_tables, engine
import backoffice.models  # important: registers tables
from backoffice.services.expiry import ExpirySweepJob
from backoffice.services.maintenance import MaintenanceLoop
from backoffice.services.scheduler import BackgroundJob, JobScheduler
from backoffice.services.sla import TicketSlaJob
from backoffice.services.stats import SupportStatsJob
from backoffice.services.stock_backfill import StartupStockSyncJob

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_jobs(cfg: Settings, clock: Clock) -> List[BackgroundJob]:
    return [
        TicketSlaJob(
            clock,
            interval=timedelta(seconds=cfg.SLA_JOB_INTERVAL_SECONDS),
            warning_ratio=cfg.SLA_WARNING_RATIO,
        ),
        SupportStatsJob(
            clock,
            interval=timedelta(seconds=cfg.STATS_JOB_INTERVAL_SECONDS),
            daily_days=cfg.STATS_DAILY_WINDOW_DAYS,
            weekly_weeks=cfg.STATS_WEEKLY_WINDOW_WEEKS,
            monthly_months=cfg.STATS_MONTHLY_WINDOW_MONTHS,
        ),
        ExpirySweepJob(clock, interval=timedelta(seconds=cfg.EXPIRY_JOB_INTERVAL_SECONDS)),
    ]


async def _delayed_stock_sync(scheduler: JobScheduler, job: StartupStockSyncJob, delay: float) -> None:
    try:
        await asyncio.wait_for(scheduler.stopping.wait(), timeout=delay)
        return  # shut down before the delay ran out
    except asyncio.TimeoutError:
        pass
    await scheduler.run_once(job)


app = FastAPI(title="Backoffice Maintenance Engine", version="0.1.0")
app.include_router(health_router, tags=["health"])


@app.on_event("startup")
async def on_startup():
    configure_logging(settings.LOG_LEVEL)
    await create_tables()

    app.state.tasks = []
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background jobs disabled (SCHEDULER_ENABLED=false).")
        return

    clock = SystemClock()
    scheduler = JobScheduler(build_jobs(settings, clock), SessionLocal, clock)
    maintenance = MaintenanceLoop(
        SessionLocal, clock,
        interval=timedelta(seconds=settings.MAINTENANCE_INTERVAL_SECONDS),
        pending_timeout=timedelta(seconds=settings.PENDING_PAYMENT_TIMEOUT_SECONDS),
    )
    app.state.scheduler = scheduler
    app.state.maintenance = maintenance
    app.state.tasks.append(asyncio.create_task(scheduler.run(), name="job-scheduler"))
    app.state.tasks.append(asyncio.create_task(maintenance.run(), name="maintenance-loop"))

    if settings.STOCK_SYNC_ON_STARTUP_ENABLED:
        job = StartupStockSyncJob(clock, batch_size=settings.STOCK_SYNC_BATCH_SIZE)
        app.state.tasks.append(asyncio.create_task(
            _delayed_stock_sync(scheduler, job, settings.STOCK_SYNC_ON_STARTUP_DELAY_SECONDS),
            name="startup-stock-sync",
        ))


@app.on_event("shutdown")
async def on_shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    maintenance = getattr(app.state, "maintenance", None)
    if scheduler is not None:
        scheduler.stop()
    if maintenance is not None:
        maintenance.stop()
    tasks = getattr(app.state, "tasks", [])
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    await engine.dispose()


@app.get("/")
async def root():
    return {"status": "ok", "see": ["/healthz", "/jobs"]}
