# backoffice/utils/periods.py

# Period helpers for the statistics rollups: day / week / month buckets as UTC intervals.
# Weeks start on Monday; months are keyed "YYYY-MM".
# Provides the trailing windows (last N days / weeks / months) each rebuild pass walks.
# Also normalises datetimes coming back from the database to UTC-aware.

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List
from zoneinfo import ZoneInfo

UTC = ZoneInfo("UTC")

@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    def contains(self, ts: datetime | None) -> bool:
        return ts is not None and self.start <= as_utc(ts) < self.end

def as_utc(dt: datetime | None) -> datetime | None:
    """Naive values are taken to be UTC already (SQLite drops tzinfo)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)

def day_range(day: date) -> Interval:
    start = datetime.combine(day, time.min).replace(tzinfo=UTC)
    return Interval(start, start + timedelta(days=1))

def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())  # 0=Mon

def week_range(start_day: date) -> Interval:
    start = datetime.combine(start_day, time.min).replace(tzinfo=UTC)
    return Interval(start, start + timedelta(days=7))

def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"

def add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    idx = year * 12 + (month - 1) + delta
    return idx // 12, idx % 12 + 1

def month_range(year_month: str) -> Interval:
    if len(year_month) != 7 or year_month[4] != "-":
        raise ValueError(f"Invalid year_month {year_month!r}, expected 'YYYY-MM'.")
    try:
        year, month = int(year_month[:4]), int(year_month[5:7])
    except ValueError:
        raise ValueError(f"Invalid year_month {year_month!r}, expected 'YYYY-MM'.") from None
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in {year_month!r}.")
    ny, nm = add_months(year, month, 1)
    return Interval(datetime(year, month, 1, tzinfo=UTC), datetime(ny, nm, 1, tzinfo=UTC))

def trailing_days(today: date, count: int) -> List[date]:
    """today, yesterday, ... (count entries)."""
    return [today - timedelta(days=i) for i in range(count)]

def trailing_weeks(today: date, count: int) -> List[date]:
    current = week_start(today)
    return [current - timedelta(days=7 * i) for i in range(count)]

def trailing_months(today: date, count: int) -> List[str]:
    out: List[str] = []
    for i in range(count):
        y, m = add_months(today.year, today.month, -i)
        out.append(f"{y:04d}-{m:02d}")
    return out
