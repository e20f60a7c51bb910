# backoffice/services/stats.py

# Support dashboard rollups: rebuilds daily / weekly / monthly stat rows over trailing windows.
# Every period in the window is recomputed from scratch and upserted by natural key
# (insert if missing, otherwise overwrite every field), so reruns are idempotent.
# Periods without activity still get zero-valued rows; stale keys of a rebuilt period are zeroed.
# Nothing is committed here: SupportStatsJob commits once after the whole rebuild.

from __future__ import annotations
import asyncio
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import Float, Numeric, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.clock import Clock
from backoffice.models import (
    ChatMessage, ChatPriorityWeeklyStat, ChatSession, Payment, PaymentStatus, SlaRule,
    SupportDailyStat, SupportPlan, SupportPlanMonthlyStat, SupportPlanSubscription,
    SupportStaffDailyStat, Ticket, TicketReply, TicketSeverityPriorityWeeklyStat, User,
)
from backoffice.services.scheduler import BackgroundJob
from backoffice.utils.metrics import (
    chat_duration_minutes, chat_first_response_minutes, histogram, mean, met_sla,
    minutes_between, sla_ratio,
)
from backoffice.utils.periods import (
    Interval, as_utc, day_range, month_range, trailing_days, trailing_months, trailing_weeks,
    week_range,
)

logger = logging.getLogger(__name__)

SERVICE_PAYMENT = "SERVICE_PAYMENT"
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trial")
REVENUE_DIGITS = 2


def ticket_metrics(tickets: Sequence[Ticket]) -> Dict[str, Any]:
    """Latency / SLA figures over a set of tickets.

    Each mean only looks at tickets that have the timestamps it needs; SLA totals
    count tickets where both the event and its due time are recorded.
    """
    responded = [t for t in tickets if t.first_responded_at is not None]
    resolved = [t for t in tickets if t.resolved_at is not None]

    frt_ratios = [r for r in (sla_ratio(t.created_at, t.first_responded_at, t.first_response_due_at) for t in responded) if r is not None]
    res_ratios = [r for r in (sla_ratio(t.created_at, t.resolved_at, t.resolution_due_at) for t in resolved) if r is not None]

    return {
        "avg_first_response_minutes": mean(minutes_between(t.created_at, t.first_responded_at) for t in responded),
        "avg_resolution_minutes": mean(minutes_between(t.created_at, t.resolved_at) for t in resolved),
        "avg_first_response_sla_ratio": mean(frt_ratios),
        "avg_resolution_sla_ratio": mean(res_ratios),
        "response_sla_met": sum(1 for t in responded if met_sla(t.first_responded_at, t.first_response_due_at)),
        "response_sla_total": sum(1 for t in responded if t.first_response_due_at is not None),
        "resolution_sla_met": sum(1 for t in resolved if met_sla(t.resolved_at, t.resolution_due_at)),
        "resolution_sla_total": sum(1 for t in resolved if t.resolution_due_at is not None),
    }


def chat_metrics(sessions: Sequence[ChatSession], messages_by_session: Dict[int, List[ChatMessage]]) -> Dict[str, Any]:
    first_responses: List[float] = []
    durations: List[float] = []
    message_counts: List[int] = []
    for s in sessions:
        msgs = messages_by_session.get(s.chat_session_id, [])
        frt = chat_first_response_minutes(msgs)
        if frt is not None and frt >= 0:
            first_responses.append(frt)
        durations.append(chat_duration_minutes(s))
        message_counts.append(len(msgs))
    return {
        "avg_first_response_minutes": mean(first_responses),
        "avg_duration_minutes": mean(durations),
        "avg_messages_per_session": mean(message_counts),
        "durations": durations,
    }


def _zero_fields(model) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for col in model.__table__.columns:
        if col.primary_key:
            continue
        out[col.key] = 0.0 if isinstance(col.type, (Float, Numeric)) else 0
    return out


class SupportStatsRebuilder:
    def __init__(self, session: AsyncSession, clock: Clock, daily_days: int = 7,
                 weekly_weeks: int = 4, monthly_months: int = 6):
        self.session = session
        self.clock = clock
        self.daily_days = daily_days
        self.weekly_weeks = weekly_weeks
        self.monthly_months = monthly_months

    async def rebuild_all(self, stopping: asyncio.Event | None = None) -> int | None:
        """Rebuild every period of the trailing windows.

        Returns the number of rows written, or None when `stopping` was set
        before the last period was rebuilt (the caller must not commit then).
        """
        now = self.clock.now()
        today = now.date()
        logger.info("SupportStatsRebuilder: rebuild stats start at %s", now.isoformat())

        passes = []
        for day in trailing_days(today, self.daily_days):
            passes.append((self.rebuild_daily, day))
            passes.append((self.rebuild_staff_daily, day))
        for ws in trailing_weeks(today, self.weekly_weeks):
            passes.append((self.rebuild_ticket_classification_weekly, ws))
            passes.append((self.rebuild_chat_priority_weekly, ws))
        for ym in trailing_months(today, self.monthly_months):
            passes.append((self.rebuild_plan_monthly, ym))

        written = 0
        for rebuild, period in passes:
            if stopping is not None and stopping.is_set():
                logger.info("SupportStatsRebuilder: stop requested, abandoning rebuild at %s", period)
                return None
            written += await rebuild(period)

        logger.info("SupportStatsRebuilder: rebuild stats finished, %d rows written", written)
        return written

    # ---------- storage helpers ----------

    async def _upsert(self, model, key: Dict[str, Any], fields: Dict[str, Any]) -> None:
        row = await self.session.get(model, key)
        if row is None:
            row = model(**key)
            self.session.add(row)
        for name, value in fields.items():
            setattr(row, name, value)

    async def _zero_stale(self, model, period_filter, key_cols: Tuple, kept: Iterable[Tuple]) -> int:
        """Reset rows of the period whose key was not recomputed in this pass."""
        kept = set(kept)
        rows = (await self.session.execute(select(model).where(period_filter))).scalars().all()
        zero = _zero_fields(model)
        reset = 0
        for row in rows:
            if tuple(getattr(row, c) for c in key_cols) in kept:
                continue
            for name, value in zero.items():
                setattr(row, name, value)
            reset += 1
        return reset

    async def _tickets_created(self, window: Interval, *extra) -> List[Ticket]:
        return list((await self.session.execute(
            select(Ticket)
            .where(Ticket.created_at >= window.start, Ticket.created_at < window.end, *extra)
            .order_by(Ticket.ticket_id)
        )).scalars().all())

    async def _sessions_started(self, window: Interval, *extra) -> List[ChatSession]:
        return list((await self.session.execute(
            select(ChatSession)
            .where(ChatSession.started_at >= window.start, ChatSession.started_at < window.end, *extra)
            .order_by(ChatSession.chat_session_id)
        )).scalars().all())

    async def _messages_by_session(self, session_ids: List[int]) -> Dict[int, List[ChatMessage]]:
        out: Dict[int, List[ChatMessage]] = defaultdict(list)
        if not session_ids:
            return out
        rows = (await self.session.execute(
            select(ChatMessage)
            .where(ChatMessage.chat_session_id.in_(session_ids))
            .order_by(ChatMessage.sent_at, ChatMessage.message_id)
        )).scalars().all()
        for m in rows:
            out[m.chat_session_id].append(m)
        return out

    # ---------- daily overview ----------

    async def rebuild_daily(self, day: date) -> int:
        window = day_range(day)

        created = await self._tickets_created(window)
        closed_count = (await self.session.execute(
            select(func.count()).select_from(Ticket)
            .where(Ticket.resolved_at >= window.start, Ticket.resolved_at < window.end)
        )).scalar_one()
        open_at_end = (await self.session.execute(
            select(func.count()).select_from(Ticket)
            .where(Ticket.created_at < window.end)
            .where(or_(Ticket.resolved_at.is_(None), Ticket.resolved_at >= window.end))
        )).scalar_one()

        sessions = await self._sessions_started(window)
        msgs = await self._messages_by_session([s.chat_session_id for s in sessions])

        tm = ticket_metrics(created)
        cm = chat_metrics(sessions, msgs)

        await self._upsert(SupportDailyStat, {"stat_date": day}, {
            "new_tickets_count": len(created),
            "closed_tickets_count": closed_count,
            "open_tickets_count_end_of_day": open_at_end,
            "new_chat_sessions_count": len(sessions),
            "avg_ticket_first_response_minutes": tm["avg_first_response_minutes"],
            "avg_ticket_resolution_minutes": tm["avg_resolution_minutes"],
            "avg_ticket_first_response_sla_ratio": tm["avg_first_response_sla_ratio"],
            "avg_ticket_resolution_sla_ratio": tm["avg_resolution_sla_ratio"],
            "ticket_response_sla_met_count": tm["response_sla_met"],
            "ticket_response_sla_total_count": tm["response_sla_total"],
            "ticket_resolution_sla_met_count": tm["resolution_sla_met"],
            "ticket_resolution_sla_total_count": tm["resolution_sla_total"],
            "avg_chat_first_response_minutes": cm["avg_first_response_minutes"],
            "avg_chat_duration_minutes": cm["avg_duration_minutes"],
            "avg_chat_messages_per_session": cm["avg_messages_per_session"],
        })
        return 1

    # ---------- daily per staff ----------

    async def rebuild_staff_daily(self, day: date) -> int:
        window = day_range(day)

        assigned = await self._tickets_created(window, Ticket.assignee_id.is_not(None))
        resolved = list((await self.session.execute(
            select(Ticket)
            .where(Ticket.assignee_id.is_not(None))
            .where(Ticket.resolved_at >= window.start, Ticket.resolved_at < window.end)
            .order_by(Ticket.ticket_id)
        )).scalars().all())
        sessions = await self._sessions_started(window, ChatSession.assigned_staff_id.is_not(None))
        reply_senders = (await self.session.execute(
            select(TicketReply.sender_id)
            .where(TicketReply.is_staff_reply.is_(True))
            .where(TicketReply.sent_at >= window.start, TicketReply.sent_at < window.end)
        )).scalars().all()
        chat_senders = (await self.session.execute(
            select(ChatMessage.sender_id)
            .where(ChatMessage.is_from_staff.is_(True))
            .where(ChatMessage.sent_at >= window.start, ChatMessage.sent_at < window.end)
        )).scalars().all()
        active_staff = (await self.session.execute(
            select(User.user_id).where(User.is_staff.is_(True), User.is_active.is_(True))
        )).scalars().all()

        staff_ids = set(active_staff)
        staff_ids.update(t.assignee_id for t in assigned)
        staff_ids.update(t.assignee_id for t in resolved)
        staff_ids.update(s.assigned_staff_id for s in sessions)
        staff_ids.update(reply_senders)
        staff_ids.update(chat_senders)

        msgs = await self._messages_by_session([s.chat_session_id for s in sessions])

        for staff_id in sorted(staff_ids):
            mine = [t for t in assigned if t.assignee_id == staff_id]
            my_sessions = [s for s in sessions if s.assigned_staff_id == staff_id]
            tm = ticket_metrics(mine)
            cm = chat_metrics(my_sessions, msgs)
            await self._upsert(SupportStaffDailyStat, {"stat_date": day, "staff_id": staff_id}, {
                "tickets_assigned_count": len(mine),
                "tickets_resolved_count": sum(1 for t in resolved if t.assignee_id == staff_id),
                "avg_ticket_first_response_minutes": tm["avg_first_response_minutes"],
                "avg_ticket_resolution_minutes": tm["avg_resolution_minutes"],
                "ticket_response_sla_met_count": tm["response_sla_met"],
                "ticket_response_sla_total_count": tm["response_sla_total"],
                "ticket_resolution_sla_met_count": tm["resolution_sla_met"],
                "ticket_resolution_sla_total_count": tm["resolution_sla_total"],
                "chat_sessions_handled_count": len(my_sessions),
                "avg_chat_first_response_minutes": cm["avg_first_response_minutes"],
                "avg_chat_duration_minutes": cm["avg_duration_minutes"],
                "ticket_staff_messages_count": sum(1 for s in reply_senders if s == staff_id),
                "chat_staff_messages_count": sum(1 for s in chat_senders if s == staff_id),
            })

        stale = await self._zero_stale(
            SupportStaffDailyStat, SupportStaffDailyStat.stat_date == day,
            ("staff_id",), ((s,) for s in staff_ids),
        )
        return len(staff_ids) + stale

    # ---------- weekly by severity x priority ----------

    async def rebuild_ticket_classification_weekly(self, week_start_date: date) -> int:
        window = week_range(week_start_date)
        tickets = await self._tickets_created(window)

        groups: Dict[Tuple[str, int], List[Ticket]] = {}
        rules = (await self.session.execute(
            select(SlaRule.severity, SlaRule.priority_level).where(SlaRule.is_active.is_(True))
        )).all()
        for severity, priority in rules:
            groups.setdefault((severity, priority), [])
        for t in tickets:
            groups.setdefault((t.severity or "Unknown", t.priority_level), []).append(t)

        for (severity, priority) in sorted(groups):
            group = groups[(severity, priority)]
            tm = ticket_metrics(group)
            await self._upsert(TicketSeverityPriorityWeeklyStat, {
                "week_start_date": week_start_date, "severity": severity, "priority_level": priority,
            }, {
                "tickets_count": len(group),
                "response_sla_met_count": tm["response_sla_met"],
                "response_sla_total_count": tm["response_sla_total"],
                "resolution_sla_met_count": tm["resolution_sla_met"],
                "resolution_sla_total_count": tm["resolution_sla_total"],
                "avg_first_response_minutes": tm["avg_first_response_minutes"],
                "avg_resolution_minutes": tm["avg_resolution_minutes"],
            })

        stale = await self._zero_stale(
            TicketSeverityPriorityWeeklyStat,
            TicketSeverityPriorityWeeklyStat.week_start_date == week_start_date,
            ("severity", "priority_level"), groups.keys(),
        )
        return len(groups) + stale

    # ---------- weekly chat by priority ----------

    async def rebuild_chat_priority_weekly(self, week_start_date: date) -> int:
        window = week_range(week_start_date)
        sessions = await self._sessions_started(window)
        msgs = await self._messages_by_session([s.chat_session_id for s in sessions])

        groups: Dict[int, List[ChatSession]] = {0: []}
        plan_levels = (await self.session.execute(
            select(SupportPlan.priority_level).where(SupportPlan.is_active.is_(True))
        )).scalars().all()
        for level in plan_levels:
            groups.setdefault(level, [])
        for s in sessions:
            groups.setdefault(s.priority_level, []).append(s)

        for priority in sorted(groups):
            group = groups[priority]
            cm = chat_metrics(group, msgs)
            b0_5, b5_10, b10_20, b20_plus = histogram(cm["durations"])
            await self._upsert(ChatPriorityWeeklyStat, {
                "week_start_date": week_start_date, "priority_level": priority,
            }, {
                "sessions_count": len(group),
                "avg_first_response_minutes": cm["avg_first_response_minutes"],
                "avg_duration_minutes": cm["avg_duration_minutes"],
                "duration_0_5_count": b0_5,
                "duration_5_10_count": b5_10,
                "duration_10_20_count": b10_20,
                "duration_20_plus_count": b20_plus,
            })

        stale = await self._zero_stale(
            ChatPriorityWeeklyStat, ChatPriorityWeeklyStat.week_start_date == week_start_date,
            ("priority_level",), ((p,) for p in groups),
        )
        return len(groups) + stale

    # ---------- monthly per support plan ----------

    @staticmethod
    def _active_at(sub: SupportPlanSubscription, at) -> bool:
        if (sub.status or "").strip().lower() not in ACTIVE_SUBSCRIPTION_STATUSES:
            return False
        if as_utc(sub.started_at) >= at:
            return False
        return sub.expires_at is None or as_utc(sub.expires_at) > at

    async def rebuild_plan_monthly(self, year_month: str) -> int:
        window = month_range(year_month)

        subs = (await self.session.execute(
            select(SupportPlanSubscription, Payment)
            .outerjoin(Payment, Payment.payment_id == SupportPlanSubscription.payment_id)
            .where(SupportPlanSubscription.started_at < window.end)
            .where(or_(SupportPlanSubscription.expires_at.is_(None),
                       SupportPlanSubscription.expires_at >= window.start))
            .order_by(SupportPlanSubscription.subscription_id)
        )).all()
        plan_ids = set((await self.session.execute(
            select(SupportPlan.support_plan_id).where(SupportPlan.is_active.is_(True))
        )).scalars().all())
        plan_ids.update(sub.support_plan_id for sub, _ in subs)

        tickets = await self._tickets_created(window, Ticket.customer_id.is_not(None))
        chats = await self._sessions_started(window, ChatSession.customer_id.is_not(None))

        for plan_id in sorted(plan_ids):
            mine = [(sub, pay) for sub, pay in subs if sub.support_plan_id == plan_id]
            customers = {sub.user_id for sub, _ in mine}
            revenue = sum(
                float(pay.amount) for _, pay in mine
                if pay is not None
                and pay.status == PaymentStatus.PAID
                and pay.transaction_type == SERVICE_PAYMENT
                and window.contains(pay.created_at)
            )
            await self._upsert(SupportPlanMonthlyStat, {
                "year_month": year_month, "support_plan_id": plan_id,
            }, {
                "active_subscriptions_count": sum(1 for sub, _ in mine if self._active_at(sub, window.end)),
                "new_subscriptions_count": sum(1 for sub, _ in mine if window.contains(sub.started_at)),
                "support_plan_revenue": round(revenue, REVENUE_DIGITS),
                "tickets_count": sum(1 for t in tickets if t.customer_id in customers),
                "chat_sessions_count": sum(1 for c in chats if c.customer_id in customers),
            })

        stale = await self._zero_stale(
            SupportPlanMonthlyStat, SupportPlanMonthlyStat.year_month == year_month,
            ("support_plan_id",), ((p,) for p in plan_ids),
        )
        return len(plan_ids) + stale


class SupportStatsJob(BackgroundJob):
    name = "SupportStatsJob"

    def __init__(self, clock: Clock, interval: timedelta = timedelta(minutes=5),
                 daily_days: int = 7, weekly_weeks: int = 4, monthly_months: int = 6):
        self.clock = clock
        self.interval = interval
        self.daily_days = daily_days
        self.weekly_weeks = weekly_weeks
        self.monthly_months = monthly_months

    async def execute(self, session: AsyncSession, stopping: asyncio.Event) -> int:
        rebuilder = SupportStatsRebuilder(
            session, self.clock, self.daily_days, self.weekly_weeks, self.monthly_months
        )
        written = await rebuilder.rebuild_all(stopping)
        if written is None:
            await session.rollback()
            return 0
        await session.commit()
        return written
