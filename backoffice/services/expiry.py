# backoffice/services/expiry.py

# Slow sweep that marks licensed inventory as Expired once its expiry date has passed.
# Keys and accounts are flipped with predicate-based UPDATEs, then the stock of every
# variant that lost inventory is recounted and rolled up into its product.
# Forward only: nothing here ever moves a row out of Expired.

from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.clock import Clock
from backoffice.models import AccountStatus, KeyStatus, ProductAccount, ProductKey, ProductVariant
from backoffice.services.scheduler import BackgroundJob
from backoffice.services.stock_backfill import recount_variants, roll_up_products

logger = logging.getLogger(__name__)


def _expirable(model, expired_status, now: datetime):
    return (
        model.status != expired_status,
        model.expiry_date.is_not(None),
        model.expiry_date < now,
    )


async def expire_keys(session: AsyncSession, now: datetime) -> Tuple[int, Set[int]]:
    """Returns (keys expired, variant ids they belong to)."""
    where = _expirable(ProductKey, KeyStatus.EXPIRED, now)
    variant_ids = set((await session.execute(
        select(ProductKey.variant_id).where(*where).distinct()
    )).scalars().all())
    result = await session.execute(
        update(ProductKey)
        .where(*where)
        .values(status=KeyStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0, variant_ids


async def expire_accounts(session: AsyncSession, now: datetime) -> Tuple[int, Set[int]]:
    where = _expirable(ProductAccount, AccountStatus.EXPIRED, now)
    variant_ids = set((await session.execute(
        select(ProductAccount.variant_id).where(*where).distinct()
    )).scalars().all())
    result = await session.execute(
        update(ProductAccount)
        .where(*where)
        .values(status=AccountStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0, variant_ids


class ExpirySweepJob(BackgroundJob):
    name = "ExpirySweepJob"

    def __init__(self, clock: Clock, interval: timedelta = timedelta(hours=6), batch_size: int = 200):
        self.clock = clock
        self.interval = interval
        self.batch_size = batch_size

    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int:
        now = self.clock.now()
        keys, key_variants = await expire_keys(session, now)
        accounts, account_variants = await expire_accounts(session, now)
        if stopping.is_set():
            await session.rollback()
            logger.info("ExpirySweepJob: stop requested, nothing committed.")
            return 0

        affected = key_variants | account_variants
        synced, failed = await recount_variants(session, affected, now, self.batch_size, stopping)
        product_ids = (await session.execute(
            select(ProductVariant.product_id).where(ProductVariant.variant_id.in_(affected)).distinct()
        )).scalars().all() if affected else []
        await roll_up_products(session, product_ids)
        await session.commit()

        if keys or accounts:
            logger.info(
                "ExpirySweepJob: expiredKeys=%d, expiredAccounts=%d, affectedVariants=%d, syncedVariants=%d, failed=%d",
                keys, accounts, len(affected), synced, failed,
            )
        else:
            logger.info("ExpirySweepJob: no changes.")
        return keys + accounts
