# Tests for the maintenance loop steps.
# Pending payments past the timeout are cancelled (never Paid ones, never fresh ones);
# stock flags follow stock quantities in both directions while INACTIVE stays untouched.

import asyncio
from datetime import timedelta

from sqlalchemy import select

from backoffice.clock import ManualClock
from backoffice.models import Payment, PaymentStatus, Product, ProductType, ProductVariant, StockStatus
from backoffice.services.maintenance import (
    MaintenanceLoop, cancel_stale_pending_payments, derive_stock_status, sync_stock_status,
)

from conftest import dt


async def _payment_statuses(session_factory):
    async with session_factory() as s:
        return dict((await s.execute(select(Payment.payment_id, Payment.status))).all())


async def test_stale_pending_payment_is_cancelled(session_factory):
    async with session_factory() as s:
        s.add_all([
            Payment(payment_id=1, status=PaymentStatus.PENDING, created_at=dt(2024, 3, 14, 10)),
            Payment(payment_id=2, status=PaymentStatus.PAID, created_at=dt(2024, 3, 14, 10)),
            Payment(payment_id=3, status=PaymentStatus.PENDING, created_at=dt(2024, 3, 14, 10, 3)),
        ])
        await s.commit()

    async with session_factory() as s:
        cancelled = await cancel_stale_pending_payments(s, dt(2024, 3, 14, 10, 6), timedelta(minutes=5))
        await s.commit()

    assert cancelled == 1
    assert await _payment_statuses(session_factory) == {
        1: PaymentStatus.CANCELLED, 2: PaymentStatus.PAID, 3: PaymentStatus.PENDING,
    }


async def test_payment_exactly_at_timeout_is_kept(session_factory):
    async with session_factory() as s:
        s.add(Payment(payment_id=1, status=PaymentStatus.PENDING, created_at=dt(2024, 3, 14, 10)))
        await s.commit()
        assert await cancel_stale_pending_payments(s, dt(2024, 3, 14, 10, 5), timedelta(minutes=5)) == 0


def test_derive_stock_status():
    assert derive_stock_status(0, StockStatus.ACTIVE) == StockStatus.OUT_OF_STOCK
    assert derive_stock_status(-1, None) == StockStatus.OUT_OF_STOCK
    assert derive_stock_status(4, StockStatus.OUT_OF_STOCK) == StockStatus.ACTIVE
    assert derive_stock_status(0, StockStatus.INACTIVE) == StockStatus.INACTIVE
    assert derive_stock_status(4, StockStatus.INACTIVE) == StockStatus.INACTIVE


async def _seed_catalog(session):
    session.add_all([
        Product(product_id=1, product_code="P1", product_name="Empty", product_type=ProductType.PERSONAL_KEY,
                status=StockStatus.ACTIVE),
        Product(product_id=2, product_code="P2", product_name="Restocked", product_type=ProductType.PERSONAL_KEY,
                status=StockStatus.OUT_OF_STOCK),
        Product(product_id=3, product_code="P3", product_name="Hidden", product_type=ProductType.PERSONAL_KEY,
                status=StockStatus.INACTIVE),
        Product(product_id=4, product_code="P4", product_name="Paused", product_type=ProductType.PERSONAL_KEY,
                status=StockStatus.INACTIVE),
    ])
    session.add_all([
        ProductVariant(variant_id=10, product_id=1, title="a", stock_qty=0, status=StockStatus.ACTIVE),
        ProductVariant(variant_id=20, product_id=2, title="b", stock_qty=5, status=StockStatus.OUT_OF_STOCK),
        ProductVariant(variant_id=21, product_id=2, title="c", stock_qty=0, status=StockStatus.OUT_OF_STOCK),
        ProductVariant(variant_id=30, product_id=3, title="d", stock_qty=0, status=StockStatus.INACTIVE),
        ProductVariant(variant_id=40, product_id=4, title="e", stock_qty=5, status=StockStatus.INACTIVE),
    ])
    await session.commit()


async def test_stock_status_follows_quantities(session_factory):
    async with session_factory() as s:
        await _seed_catalog(s)

    async with session_factory() as s:
        changed = await sync_stock_status(s)
        await s.commit()
    # variant 10 -> OOS, variant 20 -> ACTIVE, product 1 -> OOS, product 2 -> ACTIVE;
    # INACTIVE rows stay as they are whether their stock is 0 (30 / P3) or positive (40 / P4)
    assert changed == 4

    async with session_factory() as s:
        variants = dict((await s.execute(select(ProductVariant.variant_id, ProductVariant.status))).all())
        products = dict((await s.execute(select(Product.product_id, Product.status))).all())
    assert variants == {
        10: StockStatus.OUT_OF_STOCK, 20: StockStatus.ACTIVE,
        21: StockStatus.OUT_OF_STOCK, 30: StockStatus.INACTIVE, 40: StockStatus.INACTIVE,
    }
    assert products == {
        1: StockStatus.OUT_OF_STOCK, 2: StockStatus.ACTIVE, 3: StockStatus.INACTIVE, 4: StockStatus.INACTIVE,
    }

    # second pass has nothing left to repair
    async with session_factory() as s:
        assert await sync_stock_status(s) == 0


async def test_maintenance_tick_runs_both_steps(session_factory):
    async with session_factory() as s:
        await _seed_catalog(s)
        s.add(Payment(payment_id=1, status=PaymentStatus.PENDING, created_at=dt(2024, 3, 14, 10)))
        await s.commit()

    clock = ManualClock(dt(2024, 3, 14, 10, 6))
    loop = MaintenanceLoop(session_factory, clock, pending_timeout=timedelta(minutes=5))
    await loop.tick()

    states = {s.job.name: s for s in loop.snapshot()}
    assert states["PendingPaymentCancelJob"].last_touched == 1
    assert states["StockStatusSyncJob"].last_touched == 4
    assert all(s.failure_count == 0 for s in states.values())
    assert (await _payment_statuses(session_factory))[1] == PaymentStatus.CANCELLED


async def test_maintenance_loop_stops(session_factory, clock):
    loop = MaintenanceLoop(session_factory, clock, interval=timedelta(hours=1))
    task = asyncio.create_task(loop.run())
    for _ in range(100):
        if all(s.run_count for s in loop.snapshot()):
            break
        await asyncio.sleep(0.01)
    loop.stop()
    await asyncio.wait_for(task, timeout=2)
    assert all(s.run_count == 1 for s in loop.snapshot())
