from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from cero.apps.api.deps import get_db
from cero.apps.api.pipeline import require_user
from cero.apps.api.response import API_PREFIX, SuccessEnvelope, success_response
from cero.core.clock import as_utc, utc_now
from cero.domain.models import Account, BillingEvent, Subscription
from cero.services.auth.sessions import UserContext
from cero.services.billing import LedgerCheck, SubscriptionSnapshot, list_account_events, verify_ledger
from cero.services.entitlements import (
    FEATURE_API_ACCESS,
    effective_plan,
    entitlements_for,
    max_report_days,
    require_feature,
)
from cero.services.subscriptions import get_subscription, is_valid


router = APIRouter(prefix=API_PREFIX, tags=["api"])

API_ACCESS_MESSAGE = "API access not available on your plan"


class SubscriptionPayload(BaseModel):
    plan: str
    status: str
    valid_from: datetime
    valid_until: datetime
    grace_until: datetime | None
    provider: str
    notes: str | None


class SubscriptionResponse(BaseModel):
    account_id: int
    subscription: SubscriptionPayload | None
    valid: bool
    effective_plan: str
    max_report_days: int
    entitlements: dict[str, bool]


class BillingEventPayload(BaseModel):
    id: int
    event_type: str
    previous_plan: str
    new_plan: str
    previous_status: str
    new_status: str
    valid_until: datetime | None
    grace_until: datetime | None
    amount_cents: int | None
    currency: str
    payment_method: str | None
    external_reference: str | None
    admin_user_id: int | None
    notes: str | None
    occurred_at: datetime


class BillingEventListResponse(BaseModel):
    items: list[BillingEventPayload]
    offset: int
    limit: int


class SnapshotPayload(BaseModel):
    plan: str
    status: str
    valid_until: datetime | None
    grace_until: datetime | None


class LedgerVerificationResponse(BaseModel):
    account_id: int
    event_count: int
    consistent: bool
    chain_error: str | None
    replayed: SnapshotPayload | None
    stored: SnapshotPayload | None
    items: list[BillingEventPayload]


def _subscription_payload(subscription: Subscription) -> SubscriptionPayload:
    return SubscriptionPayload(
        plan=subscription.plan,
        status=subscription.status,
        valid_from=as_utc(subscription.valid_from),
        valid_until=as_utc(subscription.valid_until),
        grace_until=as_utc(subscription.grace_until),
        provider=subscription.provider,
        notes=subscription.notes,
    )


def _event_payload(billing_event: BillingEvent) -> BillingEventPayload:
    return BillingEventPayload(
        id=billing_event.id,
        event_type=billing_event.event_type,
        previous_plan=billing_event.previous_plan,
        new_plan=billing_event.new_plan,
        previous_status=billing_event.previous_status,
        new_status=billing_event.new_status,
        valid_until=as_utc(billing_event.valid_until),
        grace_until=as_utc(billing_event.grace_until),
        amount_cents=billing_event.amount_cents,
        currency=billing_event.currency,
        payment_method=billing_event.payment_method,
        external_reference=billing_event.external_reference,
        admin_user_id=billing_event.admin_user_id,
        notes=billing_event.notes,
        occurred_at=as_utc(billing_event.occurred_at),
    )


def _snapshot_payload(snapshot: SubscriptionSnapshot | None) -> SnapshotPayload | None:
    if snapshot is None:
        return None
    return SnapshotPayload(
        plan=snapshot.plan,
        status=snapshot.status,
        valid_until=snapshot.valid_until,
        grace_until=snapshot.grace_until,
    )


@router.get("/subscription", response_model=SuccessEnvelope[SubscriptionResponse])
async def get_own_subscription(
    request: Request,
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_feature(
        session=db,
        account_id=user.account_id,
        feature_key=FEATURE_API_ACCESS,
        message=API_ACCESS_MESSAGE,
    )
    now = utc_now()
    subscription = await get_subscription(db, user.account_id)
    plan = effective_plan(subscription, now)
    payload = SubscriptionResponse(
        account_id=user.account_id,
        subscription=_subscription_payload(subscription) if subscription else None,
        valid=is_valid(subscription, now),
        effective_plan=plan,
        max_report_days=max_report_days(plan),
        entitlements={key: value.enabled for key, value in entitlements_for(subscription, now).items()},
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))


@router.get("/billing/events", response_model=SuccessEnvelope[BillingEventListResponse])
async def list_own_billing_events(
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_feature(
        session=db,
        account_id=user.account_id,
        feature_key=FEATURE_API_ACCESS,
        message=API_ACCESS_MESSAGE,
    )
    events = await list_account_events(db, account_id=user.account_id, offset=offset, limit=limit)
    payload = BillingEventListResponse(
        items=[_event_payload(item) for item in events],
        offset=offset,
        limit=limit,
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))


@router.get(
    "/admin/accounts/{account_id}/ledger",
    response_model=SuccessEnvelope[LedgerVerificationResponse],
)
async def get_account_ledger(
    request: Request,
    account_id: int,
    admin: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if await db.get(Account, account_id) is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Account not found"})
    check: LedgerCheck = await verify_ledger(db, account_id=account_id)
    events = await list_account_events(db, account_id=account_id, limit=None)
    payload = LedgerVerificationResponse(
        account_id=account_id,
        event_count=check.event_count,
        consistent=check.consistent,
        chain_error=check.chain_error,
        replayed=_snapshot_payload(check.replayed),
        stored=_snapshot_payload(check.stored),
        items=[_event_payload(item) for item in events],
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))
