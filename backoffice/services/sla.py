# backoffice/services/sla.py

# SLA status recomputation for support tickets.
# compute_sla_status is a pure function of (now, created, due/actual pairs): each deadline
# is OK, Warning (inside the last part of its window) or Overdue, and the ticket takes the worst.
# TicketSlaJob re-evaluates every open ticket that has an SLA rule and writes only changes.

from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.clock import Clock
from backoffice.models import OPEN_TICKET_STATUSES, SlaStatus, Ticket
from backoffice.services.scheduler import BackgroundJob
from backoffice.utils.periods import as_utc

logger = logging.getLogger(__name__)

DEFAULT_WARNING_RATIO = 0.75

_RANK = {SlaStatus.OK: 0, SlaStatus.WARNING: 1, SlaStatus.OVERDUE: 2}


def _worst(a: SlaStatus, b: SlaStatus) -> SlaStatus:
    return a if _RANK[a] >= _RANK[b] else b


def deadline_status(
    now: datetime,
    start: datetime,
    due: datetime | None,
    actual: datetime | None,
    warning_ratio: float = DEFAULT_WARNING_RATIO,
) -> SlaStatus:
    if due is None:
        return SlaStatus.OK
    start, due = as_utc(start), as_utc(due)
    if due < start:
        due = start

    if actual is not None:
        return SlaStatus.OVERDUE if as_utc(actual) > due else SlaStatus.OK

    now = as_utc(now)
    if now > due:
        return SlaStatus.OVERDUE
    warn_at = start + (due - start) * warning_ratio
    if now >= warn_at:
        return SlaStatus.WARNING
    return SlaStatus.OK


def compute_sla_status(
    now: datetime,
    created_at: datetime,
    first_response_due_at: datetime | None,
    first_responded_at: datetime | None,
    resolution_due_at: datetime | None,
    resolved_at: datetime | None,
    warning_ratio: float = DEFAULT_WARNING_RATIO,
) -> SlaStatus:
    if not 0.0 <= warning_ratio <= 1.0:
        raise ValueError(f"warning_ratio must be within [0, 1], got {warning_ratio}")
    response = deadline_status(now, created_at, first_response_due_at, first_responded_at, warning_ratio)
    resolution = deadline_status(now, created_at, resolution_due_at, resolved_at, warning_ratio)
    return _worst(response, resolution)


def evaluate_ticket(ticket: Ticket, now: datetime, warning_ratio: float = DEFAULT_WARNING_RATIO) -> SlaStatus:
    # tickets without a rule are not tracked
    if ticket.sla_rule_id is None:
        return SlaStatus.OK
    return compute_sla_status(
        now,
        ticket.created_at,
        ticket.first_response_due_at,
        ticket.first_responded_at,
        ticket.resolution_due_at,
        ticket.resolved_at,
        warning_ratio,
    )


class TicketSlaJob(BackgroundJob):
    name = "TicketSlaJob"

    def __init__(self, clock: Clock, interval: timedelta = timedelta(minutes=5),
                 warning_ratio: float = DEFAULT_WARNING_RATIO):
        self.clock = clock
        self.interval = interval
        self.warning_ratio = warning_ratio

    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int:
        now = self.clock.now()
        tickets = (await session.execute(
            select(Ticket)
            .where(Ticket.sla_rule_id.is_not(None))
            .where(Ticket.status.in_(OPEN_TICKET_STATUSES))
            .order_by(Ticket.ticket_id)
        )).scalars().all()

        if not tickets:
            logger.debug("TicketSlaJob: no active tickets to update at %s.", now.isoformat())
            return 0

        if stopping.is_set():
            logger.info("TicketSlaJob: stop requested, skipping %d tickets.", len(tickets))
            return 0

        changed = 0
        for ticket in tickets:
            status = evaluate_ticket(ticket, now, self.warning_ratio)
            if ticket.sla_status != status:
                ticket.sla_status = status
                changed += 1

        if changed:
            await session.commit()

        logger.info(
            "TicketSlaJob: evaluated %d tickets, changed SLA status for %d tickets.",
            len(tickets), changed,
        )
        return changed
