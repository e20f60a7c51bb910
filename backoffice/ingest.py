# backoffice/ingest.py

# Fixture loader: fills the database from `<table>.csv` files in SEED_DIR.
# Tables are replaced (DELETE + INSERT) in foreign-key order; tables without a CSV are left alone.
# Values are coerced per column type (UTC datetimes, dates, booleans, ints); empty cells become NULL.
# Usage: SEED_DIR=./seed python -m backoffice.ingest

from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List

import pandas as pd
from sqlalchemy import Boolean, Date, DateTime, Float, Integer, Numeric, Table
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.config import settings
from backoffice.db import Base, SessionLocal, create_tables
import backoffice.models  # ensure models are registered

_TRUE = {"1", "1.0", "true", "t", "yes", "y"}


def _to_bool(val: Any) -> bool | None:
    if val is None:
        return None
    return str(val).strip().lower() in _TRUE


def _coerce(table: Table, df: pd.DataFrame) -> List[Dict[str, Any]]:
    df = df.copy()
    df.columns = [c.strip().lower() for c in df.columns]
    unknown = [c for c in df.columns if c not in table.c]
    if unknown:
        raise ValueError(f"{table.name}.csv has unknown columns: {', '.join(unknown)}")

    for name in df.columns:
        col_type = table.c[name].type
        if isinstance(col_type, DateTime):
            df[name] = pd.to_datetime(df[name], utc=True).astype(object)
        elif isinstance(col_type, Date):
            df[name] = pd.to_datetime(df[name]).dt.date.astype(object)
        elif isinstance(col_type, Boolean):
            df[name] = df[name].astype(object).where(df[name].notna(), None).map(_to_bool)
        elif isinstance(col_type, Integer):
            df[name] = df[name].astype("Int64").astype(object)
        elif isinstance(col_type, (Float, Numeric)):
            df[name] = df[name].astype(float).astype(object)
        else:
            df[name] = df[name].astype(object).where(df[name].notna(), None).map(
                lambda v: v if v is None else str(v)
            )

    records = df.to_dict(orient="records")
    for rec in records:
        for key, value in rec.items():
            if value is pd.NaT or (not isinstance(value, str) and pd.isna(value)):
                rec[key] = None
            elif isinstance(value, pd.Timestamp):
                rec[key] = value.to_pydatetime()
            elif hasattr(value, "item"):
                # numpy scalars are not accepted by the DB drivers
                rec[key] = value.item()
    return records


def find_seed_files(seed_dir: str) -> Dict[str, str]:
    """Map table name -> CSV path for every known table with a `<table>.csv`."""
    found = {}
    for table in Base.metadata.sorted_tables:
        path = os.path.join(seed_dir, f"{table.name}.csv")
        if os.path.exists(path):
            found[table.name] = path
    return found


async def load_tables(session: AsyncSession, files: Dict[str, str]) -> Dict[str, int]:
    tables = [t for t in Base.metadata.sorted_tables if t.name in files]

    # children first, so parent deletes do not trip foreign keys
    for table in reversed(tables):
        await session.execute(table.delete())

    counts: Dict[str, int] = {}
    for table in tables:
        records = _coerce(table, pd.read_csv(files[table.name]))
        if records:
            await session.execute(table.insert(), records)
        counts[table.name] = len(records)
        print(f"Inserted {table.name} rows: {len(records)}")

    await session.commit()
    return counts


async def ingest(seed_dir: str) -> Dict[str, int]:
    await create_tables()

    files = find_seed_files(seed_dir)
    if not files:
        raise FileNotFoundError(f"No <table>.csv files found in {seed_dir}")

    async with SessionLocal() as session:
        counts = await load_tables(session, files)
    print("\nIngest complete. Rows => " + " ".join(f"{k}:{v}" for k, v in counts.items()))
    return counts


if __name__ == "__main__":
    seed_dir = settings.SEED_DIR or os.getcwd()
    print(f"Using SEED_DIR={seed_dir}\n")
    asyncio.run(ingest(seed_dir))
