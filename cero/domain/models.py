from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    DDL,
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cero.core.errors import ConsistencyViolation


ACCOUNT_STATUSES = ("active", "suspended", "cancelled")
USER_ROLES = ("user", "admin")
PLANS = ("free", "pro", "enterprise")
SUBSCRIPTION_STATUSES = ("active", "grace_period", "expired", "cancelled")


def _in_check(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint(_in_check("status", ACCOUNT_STATUSES), name="ck_accounts_status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active", server_default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint(_in_check("role", USER_ROLES), name="ck_users_role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Users never move between accounts once created.
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    password_hash: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="user", server_default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserSession(Base):
    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    # Only the SHA-256 of the cookie token is stored.
    token_hash: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Absolute cap; activity never moves it.
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(_in_check("plan", PLANS), name="ck_subscriptions_plan"),
        CheckConstraint(_in_check("status", SUBSCRIPTION_STATUSES), name="ck_subscriptions_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # One row per account.
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), unique=True)
    plan: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # valid_until and grace_until are the only inputs to access decisions.
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider: Mapped[str] = mapped_column(String, default="manual", server_default="manual")
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class BillingEvent(Base):
    __tablename__ = "billing_events"
    __table_args__ = (Index("ix_billing_events_account_occurred_at", "account_id", "occurred_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    # "none" marks the first event of an account.
    previous_plan: Mapped[str] = mapped_column(String)
    new_plan: Mapped[str] = mapped_column(String)
    previous_status: Mapped[str] = mapped_column(String)
    new_status: Mapped[str] = mapped_column(String)
    # Access window after the transition so replay can rebuild the subscription row.
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Minor currency units; null when no payment accompanied the transition.
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String, default="USD", server_default="USD")
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null for system-initiated transitions.
    admin_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null for pre-auth or system events.
    account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    action: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    # Sanitized before insert; never holds passwords or tokens.
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, default=dict)


APPEND_ONLY_MODELS = (BillingEvent, AuditLog)

# Foreign keys stay out of the trigger column lists so ON DELETE SET NULL keeps working.
_IMMUTABLE_COLUMNS = {
    BillingEvent: (
        "event_type",
        "previous_plan",
        "new_plan",
        "previous_status",
        "new_status",
        "valid_until",
        "grace_until",
        "amount_cents",
        "currency",
        "payment_method",
        "external_reference",
        "notes",
        "occurred_at",
    ),
    AuditLog: ("occurred_at", "action", "outcome", "resource_type", "resource_id", "details_json"),
}


def _reject_mutation(mapper, connection, target) -> None:
    raise ConsistencyViolation(f"{target.__tablename__} is append-only")


for _model in APPEND_ONLY_MODELS:
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)
    event.listen(
        _model.__table__,
        "after_create",
        DDL(
            f"CREATE TRIGGER IF NOT EXISTS {_model.__tablename__}_append_only "
            f"BEFORE UPDATE OF {', '.join(_IMMUTABLE_COLUMNS[_model])} ON {_model.__tablename__} "
            f"BEGIN SELECT RAISE(ABORT, '{_model.__tablename__} is append-only'); END"
        ).execute_if(dialect="sqlite"),
    )
