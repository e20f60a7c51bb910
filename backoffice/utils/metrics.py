# backoffice/utils/metrics.py

# Small pure helpers shared by the rollup passes.
# Latencies are minutes between two timestamps; means skip records that lack
# the timestamps they need and fall back to 0 for an empty sample.
# Chat helpers derive first-response latency, duration and histogram bucket per session.

from __future__ import annotations
from datetime import datetime
from typing import Iterable, List, Sequence

from backoffice.utils.periods import as_utc

MEAN_DIGITS = 4

# upper bounds (exclusive) of the chat duration histogram, in minutes
DURATION_BUCKETS = (5.0, 10.0, 20.0)

def minutes_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 60.0

def mean(values: Iterable[float]) -> float:
    xs = list(values)
    if not xs:
        return 0.0
    return round(sum(xs) / len(xs), MEAN_DIGITS)

def met_sla(actual: datetime | None, due: datetime | None) -> bool:
    # met means the event happened no later than its due time
    return actual is not None and due is not None and as_utc(actual) <= as_utc(due)

def sla_ratio(created: datetime, actual: datetime | None, due: datetime | None) -> float | None:
    """Actual latency / allowed latency, or None when it cannot be computed."""
    if actual is None or due is None:
        return None
    allowed = minutes_between(created, due)
    if allowed <= 0:
        return None
    return minutes_between(created, actual) / allowed

def chat_first_response_minutes(messages: Sequence) -> float | None:
    """Messages must be ordered by sent_at. None if the customer never got a staff reply."""
    customer_first = next((m for m in messages if not m.is_from_staff), None)
    if customer_first is None:
        return None
    first_at = as_utc(customer_first.sent_at)
    staff_first = next(
        (m for m in messages if m.is_from_staff and as_utc(m.sent_at) >= first_at), None
    )
    if staff_first is None:
        return None
    return minutes_between(first_at, staff_first.sent_at)

def chat_duration_minutes(session) -> float:
    end = session.closed_at or session.last_message_at or session.started_at
    return max(minutes_between(session.started_at, end), 0.0)

def duration_bucket(minutes: float) -> int:
    """0: <5, 1: 5-10, 2: 10-20, 3: >=20."""
    for idx, bound in enumerate(DURATION_BUCKETS):
        if minutes < bound:
            return idx
    return len(DURATION_BUCKETS)

def histogram(durations: Iterable[float]) -> List[int]:
    counts = [0] * (len(DURATION_BUCKETS) + 1)
    for d in durations:
        counts[duration_bucket(d)] += 1
    return counts
