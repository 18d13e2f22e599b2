from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging

from fastapi import APIRouter, Depends, Form, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from cero.apps.api.deps import get_db
from cero.apps.api.pipeline import require_csrf, require_user
from cero.apps.api.templating import render
from cero.core.errors import InputError, StorageError
from cero.domain.models import PLANS, SUBSCRIPTION_STATUSES, Account
from cero.persistence.repos import audit as audit_repo
from cero.services.accounts import search_accounts
from cero.services.audit import record_request_event
from cero.services.auth.sessions import UserContext
from cero.services.billing import list_account_events, verify_ledger
from cero.services.subscriptions import add_days, get_subscription, mark_paid, update_subscription


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

LEDGER_VIEW_LIMIT = 100
AUDIT_VIEW_LIMIT = 25


def _amount_to_cents(amount: str) -> int:
    try:
        dollars = Decimal(amount.strip())
    except InvalidOperation as exc:
        raise InputError("Invalid amount") from exc
    if not dollars.is_finite():
        raise InputError("Invalid amount")
    try:
        return int((dollars * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        # More digits than the decimal context can hold.
        raise InputError("Amount is too large") from exc


def _end_of_day(value: str) -> datetime:
    try:
        day = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InputError("Invalid valid_until date") from exc
    return datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)


def _result_page(request: Request, *, title: str, message: str, success: bool, status_code: int = 200) -> Response:
    return render(
        request,
        "admin_result.html",
        {"title": title, "message": message, "success": success},
        status_code=status_code,
    )


@router.get("/billing")
async def admin_billing(
    request: Request,
    account_id: int | None = Query(default=None),
    admin: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    page: dict = {
        "plans": PLANS,
        "statuses": SUBSCRIPTION_STATUSES,
        "account": None,
        "subscription": None,
        "events": [],
        "ledger_check": None,
        "audit_events": [],
    }
    if account_id is not None:
        account = await db.get(Account, account_id)
        if account is not None:
            page["account"] = account
            page["subscription"] = await get_subscription(db, account_id)
            page["events"] = await list_account_events(db, account_id=account_id, limit=LEDGER_VIEW_LIMIT)
            page["ledger_check"] = await verify_ledger(db, account_id=account_id)
            page["audit_events"] = await audit_repo.list_events(db, account_id=account_id, limit=AUDIT_VIEW_LIMIT)
    return render(request, "admin_billing.html", page)


@router.post("/billing/mark-paid", dependencies=[Depends(require_csrf)])
async def admin_mark_paid(
    request: Request,
    account_id: int = Form(...),
    plan: str = Form(...),
    duration: int = Form(...),
    amount: str = Form(...),
    payment_method: str = Form(default="manual"),
    currency: str = Form(default="USD"),
    reference: str = Form(default=""),
    notes: str = Form(default=""),
    admin: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    amount_cents = _amount_to_cents(amount)
    try:
        billing_event = await mark_paid(
            db,
            account_id=account_id,
            plan=plan,
            duration_days=duration,
            amount_cents=amount_cents,
            currency=currency,
            payment_method=payment_method,
            reference=reference,
            admin_id=admin.user_id,
            notes=notes or None,
        )
    except StorageError:
        await record_request_event(
            session=db,
            request=request,
            account_id=None,
            user_id=admin.user_id,
            action="payment",
            outcome="failure",
            resource_type="subscription",
            resource_id=account_id,
        )
        return _result_page(
            request,
            title="Error",
            message="Failed to process payment",
            success=False,
            status_code=500,
        )

    await record_request_event(
        session=db,
        request=request,
        account_id=account_id,
        user_id=admin.user_id,
        action="payment",
        outcome="success",
        resource_type="billing_event",
        resource_id=billing_event.id,
        details={"plan": plan, "duration_days": duration, "amount_cents": amount_cents},
    )
    logger.info("payment_recorded account_id=%s plan=%s days=%s", account_id, plan, duration)
    return _result_page(
        request,
        title="Payment recorded",
        message=(
            f"Account {account_id} marked as paid: {plan} plan for {duration} days "
            f"({amount_cents / 100:.2f} {billing_event.currency})."
        ),
        success=True,
    )


@router.post("/billing/update", dependencies=[Depends(require_csrf)])
async def admin_update_subscription(
    request: Request,
    account_id: int = Form(...),
    plan: str = Form(...),
    status: str = Form(...),
    valid_until: str = Form(...),
    grace_days: int = Form(default=0),
    notes: str = Form(default=""),
    admin: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    if grace_days < 0:
        raise InputError("Grace days cannot be negative")
    valid_until_at = _end_of_day(valid_until)
    grace_until = add_days(valid_until_at, grace_days, label="Grace period") if grace_days else None
    try:
        billing_event = await update_subscription(
            db,
            account_id=account_id,
            new_plan=plan,
            new_status=status,
            valid_until=valid_until_at,
            grace_until=grace_until,
            acting_admin_id=admin.user_id,
            notes=notes or None,
        )
    except StorageError:
        return _result_page(
            request,
            title="Error",
            message="Failed to update subscription",
            success=False,
            status_code=500,
        )

    await record_request_event(
        session=db,
        request=request,
        account_id=account_id,
        user_id=admin.user_id,
        action="subscription_update",
        outcome="success",
        resource_type="billing_event",
        resource_id=billing_event.id,
        details={"plan": plan, "status": status, "grace_days": grace_days},
    )
    return _result_page(
        request,
        title="Subscription updated",
        message=f"Account {account_id} is now {plan} ({status}).",
        success=True,
    )


@router.post("/search", dependencies=[Depends(require_csrf)])
async def admin_search(
    request: Request,
    q: str = Form(default=""),
    admin: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    results = await search_accounts(db, query=q)
    await record_request_event(
        session=db,
        request=request,
        account_id=admin.account_id,
        user_id=admin.user_id,
        action="admin_search",
        outcome="success",
        resource_type="account",
        details={"query": q, "matches": len(results)},
    )
    return render(request, "admin_search.html", {"query": q, "results": results})
