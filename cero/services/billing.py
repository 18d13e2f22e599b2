"""Append-only billing ledger.

Rows are added only by the subscription engine, inside the same transaction
as the subscription change they describe. This module exposes the append
helper the engine uses, read access for pages and the API, and a replay that
rebuilds an account's subscription state from its history alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.clock import as_utc
from cero.core.errors import ConsistencyViolation
from cero.domain.models import BillingEvent, Subscription
from cero.persistence.repos import billing as billing_repo
from cero.persistence.repos import subscriptions as subscriptions_repo


logger = logging.getLogger(__name__)

NO_SUBSCRIPTION = "none"

EVENT_SUBSCRIPTION_CREATED = "subscription_created"
EVENT_SUBSCRIPTION_UPDATE = "subscription_update"
EVENT_PAYMENT_RECEIVED = "payment_received"


@dataclass(frozen=True)
class PaymentDetails:
    amount_cents: int
    currency: str = "USD"
    payment_method: str = "manual"
    external_reference: str = ""


@dataclass(frozen=True)
class SubscriptionSnapshot:
    plan: str
    status: str
    valid_until: datetime | None
    grace_until: datetime | None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionSnapshot":
        return cls(
            plan=subscription.plan,
            status=subscription.status,
            valid_until=as_utc(subscription.valid_until),
            grace_until=as_utc(subscription.grace_until),
        )


@dataclass(frozen=True)
class LedgerCheck:
    account_id: int
    event_count: int
    replayed: SubscriptionSnapshot | None
    stored: SubscriptionSnapshot | None
    # Set when the history itself does not chain; replayed is then the last good state.
    chain_error: str | None = None

    @property
    def consistent(self) -> bool:
        return self.chain_error is None and self.replayed == self.stored


def append_event(
    session: AsyncSession,
    *,
    account_id: int,
    event_type: str,
    previous: SubscriptionSnapshot | None,
    current: SubscriptionSnapshot,
    admin_user_id: int | None,
    notes: str | None,
    occurred_at: datetime,
    payment: PaymentDetails | None = None,
) -> BillingEvent:
    # Stage the ledger row; the caller owns the surrounding transaction.
    billing_event = BillingEvent(
        account_id=account_id,
        event_type=event_type,
        previous_plan=previous.plan if previous else NO_SUBSCRIPTION,
        new_plan=current.plan,
        previous_status=previous.status if previous else NO_SUBSCRIPTION,
        new_status=current.status,
        valid_until=current.valid_until,
        grace_until=current.grace_until,
        amount_cents=payment.amount_cents if payment else None,
        currency=payment.currency if payment else "USD",
        payment_method=payment.payment_method if payment else None,
        external_reference=payment.external_reference if payment else None,
        admin_user_id=admin_user_id,
        notes=notes,
        occurred_at=occurred_at,
    )
    session.add(billing_event)
    return billing_event


def apply_event(state: SubscriptionSnapshot | None, billing_event: BillingEvent) -> SubscriptionSnapshot:
    # Each event must start from the state the previous one left behind.
    expected_plan = state.plan if state else NO_SUBSCRIPTION
    expected_status = state.status if state else NO_SUBSCRIPTION
    if billing_event.previous_plan != expected_plan or billing_event.previous_status != expected_status:
        raise ConsistencyViolation(
            f"billing event {billing_event.id} does not follow the previous ledger state"
        )
    return SubscriptionSnapshot(
        plan=billing_event.new_plan,
        status=billing_event.new_status,
        valid_until=as_utc(billing_event.valid_until),
        grace_until=as_utc(billing_event.grace_until),
    )


def replay(events: Iterable[BillingEvent]) -> SubscriptionSnapshot | None:
    state: SubscriptionSnapshot | None = None
    for billing_event in events:
        state = apply_event(state, billing_event)
    return state


async def list_account_events(
    session: AsyncSession,
    *,
    account_id: int,
    newest_first: bool = True,
    offset: int = 0,
    limit: int | None = 50,
) -> list[BillingEvent]:
    return await billing_repo.list_events(
        session,
        account_id=account_id,
        newest_first=newest_first,
        offset=offset,
        limit=limit,
    )


async def verify_ledger(session: AsyncSession, *, account_id: int) -> LedgerCheck:
    events = await billing_repo.list_events_in_commit_order(session, account_id=account_id)
    subscription = await subscriptions_repo.get_by_account(session, account_id)
    state: SubscriptionSnapshot | None = None
    chain_error: str | None = None
    for billing_event in events:
        try:
            state = apply_event(state, billing_event)
        except ConsistencyViolation as exc:
            chain_error = exc.message
            break
    check = LedgerCheck(
        account_id=account_id,
        event_count=len(events),
        replayed=state,
        stored=SubscriptionSnapshot.from_subscription(subscription) if subscription else None,
        chain_error=chain_error,
    )
    if not check.consistent:
        logger.error(
            "ledger_mismatch account_id=%s events=%s chain_error=%s",
            account_id,
            check.event_count,
            chain_error,
        )
    return check
