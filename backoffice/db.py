# backoffice/db.py

# Async engine, session factory and table creation for the maintenance engine.
# The job scheduler and the maintenance loop write concurrently, so SQLite connections
# wait for the write lock (busy timeout) instead of failing straight away.
# Each job run opens its own AsyncSession from SessionLocal and closes it when the run ends.

from __future__ import annotations
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from backoffice.config import settings

Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def build_engine(url: str) -> AsyncEngine:
    connect_args = {}
    if make_url(url).get_backend_name() == "sqlite":
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SECONDS
    return create_async_engine(url, echo=False, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_tables(bind: AsyncEngine = engine) -> None:
    import backoffice.models  # noqa: F401  registers the tables on Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency for the operational endpoints."""
    async with SessionLocal() as session:
        yield session
