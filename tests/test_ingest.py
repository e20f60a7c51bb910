# Tests for the CSV fixture loader.
# Writes small `<table>.csv` files, loads them, and checks type coercion and table replacement.

import pandas as pd
from sqlalchemy import select

from backoffice.ingest import find_seed_files, load_tables
from backoffice.models import Payment, PaymentStatus, Ticket, TicketStatus, User

from conftest import dt


def write_csv(path, rows):
    pd.DataFrame(rows).to_csv(path, index=False)


async def test_load_tables_coerces_and_replaces(tmp_path, session_factory):
    write_csv(tmp_path / "users.csv", [
        {"user_id": "s1", "is_staff": "true", "is_active": 1},
        {"user_id": "c1", "is_staff": "false", "is_active": 1},
    ])
    write_csv(tmp_path / "tickets.csv", [
        {"ticket_id": 1, "customer_id": "c1", "assignee_id": "s1", "subject": "hi", "status": "InProgress",
         "severity": "High", "priority_level": 1, "sla_rule_id": None, "sla_status": "OK",
         "created_at": "2024-03-14T09:00:00Z", "first_response_due_at": "2024-03-14T09:30:00Z",
         "first_responded_at": None, "resolution_due_at": None, "resolved_at": None},
    ])
    write_csv(tmp_path / "payments.csv", [
        {"payment_id": 7, "status": "Pending", "amount": 12.5, "transaction_type": "ORDER_PAYMENT",
         "created_at": "2024-03-14 10:00:00"},
    ])
    (tmp_path / "not_a_table.csv").write_text("a\n1\n")

    files = find_seed_files(str(tmp_path))
    assert set(files) == {"users", "tickets", "payments"}

    async with session_factory() as s:
        s.add(User(user_id="old"))
        await s.commit()
        counts = await load_tables(s, files)
    assert counts == {"users": 2, "tickets": 1, "payments": 1}

    async with session_factory() as s:
        users = {u.user_id: u for u in (await s.execute(select(User))).scalars()}
        t = await s.get(Ticket, 1)
        p = await s.get(Payment, 7)

    assert set(users) == {"s1", "c1"}
    assert users["s1"].is_staff is True and users["c1"].is_staff is False
    assert t.status == TicketStatus.IN_PROGRESS
    assert t.sla_rule_id is None
    assert t.first_responded_at is None
    assert t.created_at.replace(tzinfo=None) == dt(2024, 3, 14, 9).replace(tzinfo=None)
    assert p.status == PaymentStatus.PENDING
    assert p.amount == 12.5
