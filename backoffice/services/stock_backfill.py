# backoffice/services/stock_backfill.py

# Stock recount from real inventory, used by the one-off startup backfill and by the expiry sweep.
# Recounts sellable stock per variant from the underlying keys / accounts, then rolls
# variant stock up into products. Each variant is written inside its own savepoint; a variant
# that fails is logged and skipped. INACTIVE variants and products keep their status.

from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Iterable, List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.clock import Clock
from backoffice.models import (
    AccountStatus, KeyStatus, Product, ProductAccount, ProductAccountCustomer, ProductKey,
    ProductType, ProductVariant,
)
from backoffice.services.maintenance import derive_stock_status
from backoffice.services.scheduler import BackgroundJob
from backoffice.utils.periods import as_utc

logger = logging.getLogger(__name__)

KEY_TYPES = (ProductType.PERSONAL_KEY, ProductType.SHARED_KEY)
ACCOUNT_TYPES = (ProductType.PERSONAL_ACCOUNT, ProductType.SHARED_ACCOUNT)


def _unexpired(expiry: datetime | None, now: datetime) -> bool:
    return expiry is None or as_utc(expiry) > now


# column selects only: callers may have bulk-updated these rows in the same session

async def count_available_keys(session: AsyncSession, variant_id: int, now: datetime) -> int:
    expiries = (await session.execute(
        select(ProductKey.expiry_date)
        .where(ProductKey.variant_id == variant_id)
        .where(ProductKey.status == KeyStatus.AVAILABLE)
        .where(ProductKey.assigned_to_order_id.is_(None))
    )).scalars().all()
    return sum(1 for e in expiries if _unexpired(e, now))


async def count_account_slots(session: AsyncSession, variant_id: int, product_type: ProductType,
                              now: datetime) -> int:
    """Sellable slots on Active, unexpired accounts of a variant.

    A personal account is one slot and only while nobody holds it; a shared
    account offers max_users minus its active customers.
    """
    active_customers = (
        select(func.count(ProductAccountCustomer.id))
        .where(ProductAccountCustomer.product_account_id == ProductAccount.product_account_id)
        .where(ProductAccountCustomer.is_active.is_(True))
        .scalar_subquery()
    )
    rows = (await session.execute(
        select(ProductAccount.expiry_date, ProductAccount.max_users, active_customers)
        .where(ProductAccount.variant_id == variant_id)
        .where(ProductAccount.status == AccountStatus.ACTIVE)
    )).all()

    slots = 0
    for expiry, max_users, used in rows:
        if not _unexpired(expiry, now):
            continue
        used = used or 0
        if product_type == ProductType.PERSONAL_ACCOUNT:
            slots += 1 if used == 0 else 0
        else:
            slots += max(max(max_users or 1, 1) - used, 0)
    return slots


async def recount_variant(session: AsyncSession, variant_id: int, product_type: ProductType,
                          now: datetime) -> None:
    if product_type in KEY_TYPES:
        stock = await count_available_keys(session, variant_id, now)
    else:
        stock = await count_account_slots(session, variant_id, product_type, now)
    variant = await session.get(ProductVariant, variant_id, populate_existing=True)
    variant.stock_qty = stock
    variant.status = derive_stock_status(stock, variant.status)


async def recount_variants(session: AsyncSession, variant_ids: Iterable[int], now: datetime,
                           batch_size: int = 200, stopping: asyncio.Event | None = None) -> tuple[int, int]:
    """Recount key/account variants, committing per batch. Returns (updated, failed).

    Variants of other product types are ignored. Stops between batches once
    `stopping` is set.
    """
    ids = sorted(set(variant_ids))
    if not ids:
        return 0, 0
    variants = (await session.execute(
        select(ProductVariant.variant_id, Product.product_type)
        .join(Product, Product.product_id == ProductVariant.product_id)
        .where(ProductVariant.variant_id.in_(ids))
        .where(Product.product_type.in_(KEY_TYPES + ACCOUNT_TYPES))
        .order_by(ProductVariant.variant_id)
    )).all()

    updated = 0
    failed = 0
    for i in range(0, len(variants), batch_size):
        if stopping is not None and stopping.is_set():
            logger.info("Stock recount: stop requested, leaving after %d variants.", i)
            break
        for variant_id, product_type in variants[i:i + batch_size]:
            try:
                async with session.begin_nested():
                    await recount_variant(session, variant_id, product_type, now)
                updated += 1
            except Exception:
                failed += 1
                logger.exception("Stock recount: failed to recount variant %s, skipping.", variant_id)
        await session.commit()
    return updated, failed


async def roll_up_products(session: AsyncSession, product_ids: Iterable[int] | None = None) -> int:
    """Product stock = sum of its variants' stock; status follows, INACTIVE kept."""
    totals_q = (
        select(ProductVariant.product_id, func.coalesce(func.sum(ProductVariant.stock_qty), 0))
        .group_by(ProductVariant.product_id)
    )
    products_q = select(Product).order_by(Product.product_id).execution_options(populate_existing=True)
    if product_ids is not None:
        product_ids = list(set(product_ids))
        if not product_ids:
            return 0
        totals_q = totals_q.where(ProductVariant.product_id.in_(product_ids))
        products_q = products_q.where(Product.product_id.in_(product_ids))

    totals = dict((await session.execute(totals_q)).all())
    products: List[Product] = list((await session.execute(products_q)).scalars().all())
    for product in products:
        stock = int(totals.get(product.product_id, 0))
        product.stock_qty = stock
        product.status = derive_stock_status(stock, product.status)
    return len(products)


class StartupStockSyncJob(BackgroundJob):
    name = "StartupStockSyncJob"

    def __init__(self, clock: Clock, batch_size: int = 200):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.clock = clock
        self.batch_size = batch_size
        self.interval = None  # not scheduled

    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int:
        now = self.clock.now()
        variant_ids = (await session.execute(
            select(ProductVariant.variant_id)
            .join(Product, Product.product_id == ProductVariant.product_id)
            .where(Product.product_type.in_(KEY_TYPES + ACCOUNT_TYPES))
        )).scalars().all()
        logger.info("StartupStockSyncJob: recounting stock for %d variants.", len(variant_ids))

        updated, failed = await recount_variants(session, variant_ids, now, self.batch_size, stopping)
        if stopping.is_set():
            return updated

        updated += await roll_up_products(session)
        await session.commit()
        logger.info("StartupStockSyncJob: done, %d records updated, %d variants failed.", updated, failed)
        return updated
