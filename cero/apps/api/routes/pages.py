from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from cero.apps.api.deps import get_db
from cero.apps.api.pipeline import require_user
from cero.apps.api.templating import render
from cero.core.clock import utc_now
from cero.domain.models import Account
from cero.services.auth.sessions import UserContext
from cero.services.billing import list_account_events
from cero.services.entitlements import effective_plan, entitlements_for, max_report_days
from cero.services.subscriptions import get_subscription, is_valid


router = APIRouter(tags=["pages"])

RECENT_EVENT_LIMIT = 20


@router.get("/dashboard")
async def dashboard(
    request: Request,
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    account = await db.get(Account, user.account_id)
    return render(request, "dashboard.html", {"account": account})


@router.get("/billing")
async def billing(
    request: Request,
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    now = utc_now()
    subscription = await get_subscription(db, user.account_id)
    plan = effective_plan(subscription, now)
    events = await list_account_events(db, account_id=user.account_id, limit=RECENT_EVENT_LIMIT)
    return render(
        request,
        "billing.html",
        {
            "subscription": subscription,
            "subscription_valid": is_valid(subscription, now),
            "effective_plan": plan,
            "max_report_days": max_report_days(plan),
            "entitlements": entitlements_for(subscription, now),
            "events": events,
        },
    )
