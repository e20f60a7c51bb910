# backoffice/models.py

# SQLAlchemy ORM models for the tables the maintenance jobs read and write.
# Transactional tables (tickets, chat, payments, catalog, subscriptions) are owned
# by the storefront/helpdesk application; the jobs only derive fields from them.
# The *_stats tables are rollups keyed by their natural key (period + dimensions).


from __future__ import annotations
import enum
from datetime import date, datetime

from sqlalchemy import (
    String, Integer, Float, Numeric, Boolean, Date, DateTime, Enum, ForeignKey, Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.db import Base


def _enum(cls: type[enum.Enum]) -> Enum:
    # persist the value ("InProgress"), not the member name
    return Enum(cls, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e])


class TicketStatus(str, enum.Enum):
    NEW = "New"
    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CLOSED = "Closed"


OPEN_TICKET_STATUSES = (TicketStatus.NEW, TicketStatus.OPEN, TicketStatus.IN_PROGRESS)


class SlaStatus(str, enum.Enum):
    OK = "OK"
    WARNING = "Warning"
    OVERDUE = "Overdue"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    SUCCESS = "Success"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"
    TIMEOUT = "Timeout"


class StockStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INACTIVE = "INACTIVE"  # set by an administrator only


class ProductType(str, enum.Enum):
    PERSONAL_KEY = "PERSONAL_KEY"
    SHARED_KEY = "SHARED_KEY"
    PERSONAL_ACCOUNT = "PERSONAL_ACCOUNT"
    SHARED_ACCOUNT = "SHARED_ACCOUNT"
    SERVICE = "SERVICE"


class KeyStatus(str, enum.Enum):
    AVAILABLE = "Available"
    SOLD = "Sold"
    ERROR = "Error"
    RECALLED = "Recalled"
    EXPIRED = "Expired"


class AccountStatus(str, enum.Enum):
    ACTIVE = "Active"
    FULL = "Full"
    ERROR = "Error"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"


# ---------- people / support configuration ----------

class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_staff: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class SlaRule(Base):
    __tablename__ = "sla_rules"

    sla_rule_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    priority_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_response_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    resolution_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class SupportPlan(Base):
    __tablename__ = "support_plans"

    support_plan_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    priority_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ---------- tickets / chat ----------

class Ticket(Base):
    __tablename__ = "tickets"

    ticket_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"), nullable=True)
    assignee_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"), nullable=True)
    subject: Mapped[str] = mapped_column(String, default="", nullable=False)
    status: Mapped[TicketStatus] = mapped_column(_enum(TicketStatus), default=TicketStatus.NEW, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), default="Medium", nullable=False)
    priority_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sla_rule_id: Mapped[int | None] = mapped_column(ForeignKey("sla_rules.sla_rule_id"), nullable=True)
    sla_status: Mapped[SlaStatus] = mapped_column(_enum(SlaStatus), default=SlaStatus.OK, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    first_response_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_tickets_status_rule", "status", "sla_rule_id"),
        Index("idx_tickets_created", "created_at"),
        Index("idx_tickets_resolved", "resolved_at"),
    )


class TicketReply(Base):
    __tablename__ = "ticket_replies"

    reply_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey("tickets.ticket_id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    is_staff_reply: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)


class ChatSession(Base):
    __tablename__ = "support_chat_sessions"

    chat_session_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"), nullable=True)
    assigned_staff_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"), nullable=True)
    priority_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="Open", nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ChatMessage(Base):
    __tablename__ = "support_chat_messages"

    message_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_session_id: Mapped[int] = mapped_column(ForeignKey("support_chat_sessions.chat_session_id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    is_from_staff: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)

    __table_args__ = (
        Index("idx_chat_msg_session_time", "chat_session_id", "sent_at"),
    )


# ---------- payments / subscriptions ----------

class Payment(Base):
    __tablename__ = "payments"

    payment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[PaymentStatus] = mapped_column(_enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), default=0, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), default="ORDER_PAYMENT", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_payments_status_created", "status", "created_at"),
    )


class SupportPlanSubscription(Base):
    __tablename__ = "user_support_plan_subscriptions"

    subscription_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    support_plan_id: Mapped[int] = mapped_column(ForeignKey("support_plans.support_plan_id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="Active", nullable=False)  # Active/Trial/Expired/Cancelled
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.payment_id"), nullable=True)


# ---------- catalog / inventory ----------

class Product(Base):
    __tablename__ = "products"

    product_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    product_name: Mapped[str] = mapped_column(String, nullable=False)
    product_type: Mapped[ProductType] = mapped_column(_enum(ProductType), nullable=False)
    stock_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[StockStatus] = mapped_column(_enum(StockStatus), default=StockStatus.ACTIVE, nullable=False)


class ProductVariant(Base):
    __tablename__ = "product_variants"

    variant_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.product_id"), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    stock_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[StockStatus] = mapped_column(_enum(StockStatus), default=StockStatus.ACTIVE, nullable=False)


class ProductKey(Base):
    __tablename__ = "product_keys"

    key_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    variant_id: Mapped[int] = mapped_column(ForeignKey("product_variants.variant_id"), index=True, nullable=False)
    status: Mapped[KeyStatus] = mapped_column(_enum(KeyStatus), default=KeyStatus.AVAILABLE, nullable=False)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to_order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProductAccount(Base):
    __tablename__ = "product_accounts"

    product_account_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    variant_id: Mapped[int] = mapped_column(ForeignKey("product_variants.variant_id"), index=True, nullable=False)
    status: Mapped[AccountStatus] = mapped_column(_enum(AccountStatus), default=AccountStatus.ACTIVE, nullable=False)
    max_users: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProductAccountCustomer(Base):
    __tablename__ = "product_account_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_account_id: Mapped[int] = mapped_column(ForeignKey("product_accounts.product_account_id"), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ---------- rollups ----------

class SupportDailyStat(Base):
    __tablename__ = "support_daily_stats"

    stat_date: Mapped[date] = mapped_column(Date, primary_key=True)

    new_tickets_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    closed_tickets_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    open_tickets_count_end_of_day: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_chat_sessions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    avg_ticket_first_response_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_ticket_resolution_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_ticket_first_response_sla_ratio: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_ticket_resolution_sla_ratio: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    ticket_response_sla_met_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_response_sla_total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_resolution_sla_met_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_resolution_sla_total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    avg_chat_first_response_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_chat_duration_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_chat_messages_per_session: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


class SupportStaffDailyStat(Base):
    __tablename__ = "support_staff_daily_stats"

    stat_date: Mapped[date] = mapped_column(Date, primary_key=True)
    staff_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    tickets_assigned_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tickets_resolved_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_ticket_first_response_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_ticket_resolution_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ticket_response_sla_met_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_response_sla_total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_resolution_sla_met_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_resolution_sla_total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    chat_sessions_handled_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_chat_first_response_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_chat_duration_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ticket_staff_messages_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chat_staff_messages_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TicketSeverityPriorityWeeklyStat(Base):
    __tablename__ = "support_ticket_severity_priority_weekly_stats"

    week_start_date: Mapped[date] = mapped_column(Date, primary_key=True)
    severity: Mapped[str] = mapped_column(String(16), primary_key=True)
    priority_level: Mapped[int] = mapped_column(Integer, primary_key=True)

    tickets_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_sla_met_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_sla_total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolution_sla_met_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolution_sla_total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_first_response_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_resolution_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


class ChatPriorityWeeklyStat(Base):
    __tablename__ = "support_chat_priority_weekly_stats"

    week_start_date: Mapped[date] = mapped_column(Date, primary_key=True)
    priority_level: Mapped[int] = mapped_column(Integer, primary_key=True)

    sessions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_first_response_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_duration_minutes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    duration_0_5_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_5_10_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_10_20_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_20_plus_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class SupportPlanMonthlyStat(Base):
    __tablename__ = "support_plan_monthly_stats"

    year_month: Mapped[str] = mapped_column(String(7), primary_key=True)  # "YYYY-MM"
    support_plan_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    active_subscriptions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_subscriptions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    support_plan_revenue: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), default=0, nullable=False)
    tickets_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chat_sessions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
