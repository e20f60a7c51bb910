# backoffice/services/maintenance.py

# Short-interval maintenance loop, separate from the job scheduler:
#   - cancels payments still Pending after the timeout (one predicate-based UPDATE),
#   - repairs OUT_OF_STOCK/ACTIVE flags on variants and products from stock quantities.
# INACTIVE is an administrator's decision and is never matched by either repair.
# Each step runs in its own session and fault boundary; the loop sleeps a fixed interval between ticks.

from __future__ import annotations
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backoffice.clock import Clock
from backoffice.models import Payment, PaymentStatus, Product, ProductVariant, StockStatus
from backoffice.services.scheduler import BackgroundJob, JobState, run_job_safely

logger = logging.getLogger(__name__)

DEFAULT_PENDING_TIMEOUT = timedelta(minutes=5)


def derive_stock_status(stock: int, current: StockStatus | None) -> StockStatus:
    if current == StockStatus.INACTIVE:
        return StockStatus.INACTIVE
    return StockStatus.OUT_OF_STOCK if stock <= 0 else StockStatus.ACTIVE


async def cancel_stale_pending_payments(session: AsyncSession, now: datetime,
                                        timeout: timedelta = DEFAULT_PENDING_TIMEOUT) -> int:
    """Pending -> Cancelled for payments created before now - timeout.

    The status is part of the WHERE clause, so a payment that became Paid in
    the meantime is simply not matched.
    """
    threshold = now - timeout
    result = await session.execute(
        update(Payment)
        .where(Payment.status == PaymentStatus.PENDING)
        .where(Payment.created_at < threshold)
        .values(status=PaymentStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def sync_stock_status(session: AsyncSession) -> int:
    changed = 0
    not_flippable = (StockStatus.OUT_OF_STOCK, StockStatus.INACTIVE)

    result = await session.execute(
        update(ProductVariant)
        .where(ProductVariant.stock_qty <= 0)
        .where(ProductVariant.status.not_in(not_flippable))
        .values(status=StockStatus.OUT_OF_STOCK)
        .execution_options(synchronize_session=False)
    )
    changed += result.rowcount or 0
    result = await session.execute(
        update(ProductVariant)
        .where(ProductVariant.stock_qty > 0)
        .where(ProductVariant.status == StockStatus.OUT_OF_STOCK)
        .values(status=StockStatus.ACTIVE)
        .execution_options(synchronize_session=False)
    )
    changed += result.rowcount or 0

    # product level: same rule on the summed stock of its variants
    total_stock = (
        select(func.coalesce(func.sum(ProductVariant.stock_qty), 0))
        .where(ProductVariant.product_id == Product.product_id)
        .scalar_subquery()
    )
    result = await session.execute(
        update(Product)
        .where(total_stock <= 0)
        .where(Product.status.not_in(not_flippable))
        .values(status=StockStatus.OUT_OF_STOCK)
        .execution_options(synchronize_session=False)
    )
    changed += result.rowcount or 0
    result = await session.execute(
        update(Product)
        .where(total_stock > 0)
        .where(Product.status == StockStatus.OUT_OF_STOCK)
        .values(status=StockStatus.ACTIVE)
        .execution_options(synchronize_session=False)
    )
    changed += result.rowcount or 0
    return changed


class PendingPaymentCancelJob(BackgroundJob):
    name = "PendingPaymentCancelJob"

    def __init__(self, clock: Clock, timeout: timedelta = DEFAULT_PENDING_TIMEOUT,
                 interval: timedelta = timedelta(minutes=1)):
        self.clock = clock
        self.timeout = timeout
        self.interval = interval

    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int:
        cancelled = await cancel_stale_pending_payments(session, self.clock.now(), self.timeout)
        await session.commit()
        if cancelled:
            logger.info(
                "PendingPaymentCancelJob: auto-cancelled %d pending payment(s) older than %.0f minutes.",
                cancelled, self.timeout.total_seconds() / 60,
            )
        return cancelled


class StockStatusSyncJob(BackgroundJob):
    name = "StockStatusSyncJob"

    def __init__(self, interval: timedelta = timedelta(minutes=1)):
        self.interval = interval

    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int:
        changed = await sync_stock_status(session)
        await session.commit()
        logger.info("StockStatusSyncJob: updated %d record(s).", changed)
        return changed


class MaintenanceLoop:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock,
                 interval: timedelta = timedelta(minutes=1),
                 pending_timeout: timedelta = DEFAULT_PENDING_TIMEOUT):
        self._session_factory = session_factory
        self._clock = clock
        self.interval = interval
        self._states: List[JobState] = [
            JobState(PendingPaymentCancelJob(clock, pending_timeout, interval)),
            JobState(StockStatusSyncJob(interval)),
        ]
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    def snapshot(self) -> List[JobState]:
        return [replace(s) for s in self._states]

    async def tick(self) -> None:
        for state in self._states:
            if self._stopping.is_set():
                return
            await run_job_safely(state, self._session_factory, self._clock, self._stopping)
            state.next_run_at = self._clock.now() + self.interval

    async def run(self) -> None:
        logger.info("MaintenanceLoop started (interval %.0fs).", self.interval.total_seconds())
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval.total_seconds())
            except asyncio.TimeoutError:
                continue
        logger.info("MaintenanceLoop stopped.")
