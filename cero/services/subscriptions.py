"""Subscription state machine.

``update_subscription`` is the only code path that changes a subscription
row. It upserts the row and appends the matching ledger entry in a single
transaction; either both land or neither does. Status changes never happen
in the background: grace periods and expiry are evaluated from the stored
timestamps each time ``is_valid`` runs.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.clock import as_utc, utc_now
from cero.core.errors import ConsistencyViolation, InputError, StorageError
from cero.domain.models import PLANS, SUBSCRIPTION_STATUSES, Account, BillingEvent, Subscription
from cero.persistence.repos import subscriptions as subscriptions_repo
from cero.services.billing import (
    EVENT_PAYMENT_RECEIVED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATE,
    PaymentDetails,
    SubscriptionSnapshot,
    append_event,
)


logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_DAYS = 365
# amount_cents is a 32-bit INTEGER column on PostgreSQL.
MAX_AMOUNT_CENTS = 2**31 - 1
MAX_PERIOD_DAYS = 36_500
_GRACE_STATUSES = {"grace_period", "expired", "cancelled"}


def is_valid(subscription: Subscription | None, now: datetime) -> bool:
    if subscription is None:
        return False
    if subscription.status == "active":
        return as_utc(subscription.valid_from) <= now <= as_utc(subscription.valid_until)
    if subscription.status in _GRACE_STATUSES and subscription.grace_until is not None:
        return now <= as_utc(subscription.grace_until)
    return False


async def get_subscription(session: AsyncSession, account_id: int) -> Subscription | None:
    return await subscriptions_repo.get_by_account(session, account_id)


def add_days(start: datetime, days: int, *, label: str = "Period") -> datetime:
    if days < 0 or days > MAX_PERIOD_DAYS:
        raise InputError(f"{label} must be between 0 and {MAX_PERIOD_DAYS} days")
    try:
        return start + timedelta(days=days)
    except OverflowError as exc:
        raise InputError(f"{label} ends past the supported date range") from exc


def _validate_transition(new_plan: str, new_status: str, valid_until: datetime | None) -> None:
    if new_plan not in PLANS:
        raise InputError(f"Unknown plan: {new_plan}")
    if new_status not in SUBSCRIPTION_STATUSES:
        raise InputError(f"Unknown subscription status: {new_status}")
    if valid_until is None:
        raise InputError("valid_until is required")


async def update_subscription(
    session: AsyncSession,
    *,
    account_id: int,
    new_plan: str,
    new_status: str,
    valid_until: datetime,
    acting_admin_id: int | None,
    notes: str | None = None,
    grace_until: datetime | None = None,
    payment: PaymentDetails | None = None,
    event_type: str = EVENT_SUBSCRIPTION_UPDATE,
    now: datetime | None = None,
    commit: bool = True,
) -> BillingEvent:
    """Upsert the account's subscription and append one ledger entry atomically.

    Invalid input raises ``InputError`` before anything is written. With
    ``commit=False`` both rows are only flushed, so they land together with
    whatever the caller already has pending. Any failure rolls back the whole
    session transaction, caller work included; store failures surface as
    ``StorageError``.
    """
    _validate_transition(new_plan, new_status, valid_until)
    changed_at = now or utc_now()
    valid_until = as_utc(valid_until)
    grace_until = as_utc(grace_until)

    try:
        # First statement takes the write lock so updates on one account serialize.
        await session.execute(
            update(Subscription)
            .where(Subscription.account_id == account_id)
            .values(updated_at=Subscription.updated_at)
            .execution_options(synchronize_session=False)
        )
        account = await session.get(Account, account_id)
        if account is None:
            raise InputError(f"Account {account_id} not found")

        subscription = await subscriptions_repo.get_by_account(session, account_id)
        previous = SubscriptionSnapshot.from_subscription(subscription) if subscription else None
        if subscription is None:
            subscription = Subscription(
                account_id=account_id,
                plan=new_plan,
                status=new_status,
                valid_from=changed_at,
                valid_until=valid_until,
                grace_until=grace_until,
                provider="manual",
                external_id="",
                notes=notes,
                created_at=changed_at,
                updated_at=changed_at,
            )
            session.add(subscription)
        else:
            subscription.plan = new_plan
            subscription.status = new_status
            subscription.valid_until = valid_until
            subscription.grace_until = grace_until
            subscription.notes = notes
            subscription.updated_at = changed_at

        billing_event = append_event(
            session,
            account_id=account_id,
            event_type=event_type,
            previous=previous,
            current=SubscriptionSnapshot(
                plan=new_plan,
                status=new_status,
                valid_until=valid_until,
                grace_until=grace_until,
            ),
            admin_user_id=acting_admin_id,
            notes=notes,
            occurred_at=changed_at,
            payment=payment,
        )
        await session.flush()
        if subscription.plan != billing_event.new_plan or subscription.status != billing_event.new_status:
            raise ConsistencyViolation(f"subscription and ledger disagree for account {account_id}")
        if commit:
            await session.commit()
    except InputError:
        await session.rollback()
        raise
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("subscription_update_failed account_id=%s", account_id, exc_info=exc)
        raise StorageError("Subscription update failed") from exc
    except ConsistencyViolation:
        await session.rollback()
        logger.error("subscription_update_inconsistent account_id=%s", account_id)
        raise

    logger.info(
        "subscription_updated account_id=%s event_id=%s %s/%s -> %s/%s",
        account_id,
        billing_event.id,
        billing_event.previous_plan,
        billing_event.previous_status,
        new_plan,
        new_status,
    )
    return billing_event


async def mark_paid(
    session: AsyncSession,
    *,
    account_id: int,
    plan: str,
    duration_days: int,
    amount_cents: int,
    currency: str = "USD",
    payment_method: str = "manual",
    reference: str = "",
    admin_id: int | None,
    notes: str | None = None,
    now: datetime | None = None,
) -> BillingEvent:
    # Payment receipt is confirmed by the operator; nothing here checks it.
    if duration_days <= 0:
        raise InputError("Duration must be a positive number of days")
    if amount_cents < 0:
        raise InputError("Amount cannot be negative")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise InputError("Amount is too large")
    paid_at = now or utc_now()
    return await update_subscription(
        session,
        account_id=account_id,
        new_plan=plan,
        new_status="active",
        valid_until=add_days(paid_at, duration_days, label="Duration"),
        acting_admin_id=admin_id,
        notes=notes,
        payment=PaymentDetails(
            amount_cents=amount_cents,
            currency=(currency or "USD").upper(),
            payment_method=payment_method or "manual",
            external_reference=reference or "",
        ),
        event_type=EVENT_PAYMENT_RECEIVED,
        now=paid_at,
    )


async def create_default_subscription(
    session: AsyncSession,
    *,
    account_id: int,
    now: datetime | None = None,
    commit: bool = True,
) -> BillingEvent:
    created_at = now or utc_now()
    return await update_subscription(
        session,
        account_id=account_id,
        new_plan="free",
        new_status="active",
        valid_until=created_at + timedelta(days=DEFAULT_SUBSCRIPTION_DAYS),
        acting_admin_id=None,
        notes="Initial subscription",
        event_type=EVENT_SUBSCRIPTION_CREATED,
        now=created_at,
        commit=commit,
    )
