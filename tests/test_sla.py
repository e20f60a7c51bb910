# Unit tests for SLA status computation and the TicketSlaJob.
# Pure cases: OK / Warning / Overdue per deadline, worst-of-two, clamping and ratio bounds.
# Job cases: overdue detection, only open tickets with a rule are touched, unchanged rows are not rewritten.

import asyncio
import pytest
from datetime import timedelta

from sqlalchemy import select

from backoffice.clock import ManualClock
from backoffice.models import SlaRule, SlaStatus, Ticket, TicketStatus
from backoffice.services.sla import TicketSlaJob, compute_sla_status, deadline_status

from conftest import dt

CREATED = dt(2024, 3, 14, 9)
RESP_DUE = dt(2024, 3, 14, 9, 30)
RES_DUE = dt(2024, 3, 14, 13)


def status_at(now, responded=None, resolved=None):
    return compute_sla_status(now, CREATED, RESP_DUE, responded, RES_DUE, resolved)


def test_ok_early_in_window():
    assert status_at(dt(2024, 3, 14, 9, 10)) == SlaStatus.OK

def test_warning_in_last_quarter_of_response_window():
    # 75% of 30 minutes is 09:22:30
    assert status_at(dt(2024, 3, 14, 9, 22)) == SlaStatus.OK
    assert status_at(dt(2024, 3, 14, 9, 23)) == SlaStatus.WARNING
    assert status_at(RESP_DUE) == SlaStatus.WARNING

def test_overdue_after_missed_first_response():
    assert status_at(dt(2024, 3, 14, 9, 31)) == SlaStatus.OVERDUE

def test_met_response_leaves_only_resolution_deadline():
    responded = dt(2024, 3, 14, 9, 20)
    assert status_at(dt(2024, 3, 14, 10), responded=responded) == SlaStatus.OK
    assert status_at(dt(2024, 3, 14, 12, 30), responded=responded) == SlaStatus.WARNING
    assert status_at(dt(2024, 3, 14, 13, 1), responded=responded) == SlaStatus.OVERDUE

def test_late_event_stays_overdue_forever():
    late = dt(2024, 3, 14, 9, 45)
    assert status_at(dt(2024, 3, 14, 10), responded=late) == SlaStatus.OVERDUE
    assert status_at(dt(2030, 1, 1), responded=late, resolved=dt(2024, 3, 14, 11)) == SlaStatus.OVERDUE

def test_everything_met_is_ok_even_long_after():
    assert status_at(dt(2030, 1, 1), responded=dt(2024, 3, 14, 9, 5), resolved=dt(2024, 3, 14, 12)) == SlaStatus.OK

def test_status_never_improves_while_waiting():
    rank = {SlaStatus.OK: 0, SlaStatus.WARNING: 1, SlaStatus.OVERDUE: 2}
    seen = [rank[status_at(CREATED + timedelta(minutes=m))] for m in range(0, 300, 3)]
    assert seen == sorted(seen)

def test_missing_due_dates_are_ok():
    assert compute_sla_status(dt(2030, 1, 1), CREATED, None, None, None, None) == SlaStatus.OK

def test_due_before_created_is_clamped():
    assert deadline_status(CREATED, CREATED, dt(2024, 3, 14, 8), None) == SlaStatus.WARNING
    assert deadline_status(CREATED + timedelta(seconds=1), CREATED, dt(2024, 3, 14, 8), None) == SlaStatus.OVERDUE

def test_warning_ratio_must_be_a_fraction():
    with pytest.raises(ValueError):
        compute_sla_status(CREATED, CREATED, RESP_DUE, None, RES_DUE, None, warning_ratio=1.5)


# ---------- job ----------

async def _seed(session):
    session.add(SlaRule(sla_rule_id=1, name="High", severity="High", priority_level=1,
                        first_response_minutes=30, resolution_minutes=240))
    session.add_all([
        Ticket(ticket_id=1, status=TicketStatus.OPEN, severity="High", sla_rule_id=1,
               created_at=CREATED, first_response_due_at=RESP_DUE, resolution_due_at=RES_DUE),
        # closed tickets are frozen
        Ticket(ticket_id=2, status=TicketStatus.CLOSED, severity="High", sla_rule_id=1,
               created_at=CREATED, first_response_due_at=RESP_DUE, resolution_due_at=RES_DUE),
        # no rule: not tracked
        Ticket(ticket_id=3, status=TicketStatus.NEW, created_at=CREATED,
               first_response_due_at=RESP_DUE, resolution_due_at=RES_DUE),
    ])
    await session.commit()


async def _statuses(session_factory):
    async with session_factory() as s:
        rows = (await s.execute(select(Ticket.ticket_id, Ticket.sla_status).order_by(Ticket.ticket_id))).all()
    return dict(rows)


async def test_job_marks_missed_first_response_overdue(session_factory):
    async with session_factory() as s:
        await _seed(s)

    clock = ManualClock(dt(2024, 3, 14, 9, 31))
    job = TicketSlaJob(clock)
    async with session_factory() as s:
        changed = await job.execute(s, asyncio.Event())

    assert changed == 1
    assert await _statuses(session_factory) == {
        1: SlaStatus.OVERDUE, 2: SlaStatus.OK, 3: SlaStatus.OK,
    }


async def test_job_only_writes_changes(session_factory):
    async with session_factory() as s:
        await _seed(s)

    clock = ManualClock(dt(2024, 3, 14, 9, 5))
    job = TicketSlaJob(clock)
    async with session_factory() as s:
        assert await job.execute(s, asyncio.Event()) == 0

    clock.set(dt(2024, 3, 14, 9, 25))
    async with session_factory() as s:
        assert await job.execute(s, asyncio.Event()) == 1
    assert (await _statuses(session_factory))[1] == SlaStatus.WARNING

    # same instant again: nothing to do
    async with session_factory() as s:
        assert await job.execute(s, asyncio.Event()) == 0


async def test_job_leaves_tickets_alone_once_stop_is_requested(session_factory):
    async with session_factory() as s:
        await _seed(s)

    stopping = asyncio.Event()
    stopping.set()
    job = TicketSlaJob(ManualClock(dt(2024, 3, 14, 9, 31)))
    async with session_factory() as s:
        assert await job.execute(s, stopping) == 0
    assert (await _statuses(session_factory))[1] == SlaStatus.OK
