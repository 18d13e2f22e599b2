from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Form, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from cero.apps.api.deps import get_db
from cero.apps.api.pipeline import require_csrf, require_user
from cero.apps.api.templating import render
from cero.core.clock import utc_now
from cero.services.auth.sessions import UserContext
from cero.services.entitlements import (
    FEATURE_CSV_EXPORT,
    FEATURE_REPORT_GROUPING,
    effective_plan,
    max_report_days,
    plan_allows,
)
from cero.services.reports import (
    ReportParams,
    generate_rows,
    parse_date,
    parse_grouping,
    render_csv,
    validate_params,
)
from cero.services.subscriptions import get_subscription


router = APIRouter(prefix="/reports", tags=["reports"])

DEFAULT_EXPORT_DAYS = 7
_TRUTHY = {"1", "true", "on", "yes"}


async def _account_plan(db: AsyncSession, account_id: int) -> str:
    subscription = await get_subscription(db, account_id)
    return effective_plan(subscription, utc_now())


def _csv_response(body: str) -> Response:
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="report.csv"'},
    )


@router.get("")
async def reports_form(
    request: Request,
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    plan = await _account_plan(db, user.account_id)
    today = utc_now().date()
    return render(
        request,
        "reports.html",
        {
            "plan": plan,
            "max_days": max_report_days(plan),
            "csv_available": plan_allows(plan, FEATURE_CSV_EXPORT),
            "grouping_available": plan_allows(plan, FEATURE_REPORT_GROUPING),
            "default_start": (today - timedelta(days=DEFAULT_EXPORT_DAYS)).isoformat(),
            "default_end": today.isoformat(),
        },
    )


@router.post("/generate", dependencies=[Depends(require_csrf)])
async def generate_report(
    request: Request,
    start_date: str = Form(...),
    end_date: str = Form(...),
    export_csv: str | None = Form(default=None),
    grouping: str | None = Form(default=None),
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    params = ReportParams(
        start_date=parse_date(start_date, field="start_date"),
        end_date=parse_date(end_date, field="end_date"),
        export_csv=(export_csv or "").lower() in _TRUTHY,
        grouping=parse_grouping(grouping),
    )
    plan = await _account_plan(db, user.account_id)
    validate_params(params, plan=plan)
    rows = generate_rows(params)
    if params.export_csv:
        return _csv_response(render_csv(rows))
    return render(request, "report_results.html", {"params": params, "rows": rows, "plan": plan})


@router.get("/export")
async def export_report(
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    today = utc_now().date()
    params = ReportParams(
        start_date=parse_date(start_date, field="start_date") if start_date else today - timedelta(days=DEFAULT_EXPORT_DAYS),
        end_date=parse_date(end_date, field="end_date") if end_date else today,
        export_csv=True,
    )
    plan = await _account_plan(db, user.account_id)
    validate_params(params, plan=plan)
    return _csv_response(render_csv(generate_rows(params)))
