from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import date, timedelta
import io
import logging

from cero.core.errors import AuthorizationError, InputError
from cero.services.entitlements import (
    FEATURE_CSV_EXPORT,
    FEATURE_REPORT_GROUPING,
    max_report_days,
    plan_allows,
)


logger = logging.getLogger(__name__)

GROUPINGS = ("none", "day", "week", "month")
CSV_HEADER = ("Date", "Users", "Sessions", "Accounts")


@dataclass(frozen=True)
class ReportParams:
    start_date: date
    end_date: date
    export_csv: bool = False
    grouping: str = "none"

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days


@dataclass(frozen=True)
class ReportRow:
    date: str
    user_count: int
    session_count: int
    account_count: int


def parse_date(value: str | None, *, field: str) -> date:
    if not value:
        raise InputError(f"Missing {field}")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as exc:
        raise InputError(f"Invalid {field}") from exc


def parse_grouping(value: str | None) -> str:
    # Unrecognised values mean no grouping.
    if value in GROUPINGS:
        return value
    return "none"


def validate_params(params: ReportParams, *, plan: str) -> None:
    if params.days <= 0:
        raise InputError("Invalid date range")
    max_days = max_report_days(plan)
    if params.days > max_days:
        raise AuthorizationError(f"Date range exceeds maximum of {max_days} days for your plan")
    if params.export_csv and not plan_allows(plan, FEATURE_CSV_EXPORT):
        raise AuthorizationError("CSV export not available on your plan")
    if params.grouping != "none" and not plan_allows(plan, FEATURE_REPORT_GROUPING):
        raise AuthorizationError("Report grouping not available on your plan")


def generate_rows(params: ReportParams) -> list[ReportRow]:
    # Placeholder usage figures, one row per day in [start_date, end_date).
    rows = [
        ReportRow(
            date=(params.start_date + timedelta(days=index)).isoformat(),
            user_count=1 + (index % 5),
            session_count=5 + (index % 10),
            account_count=1,
        )
        for index in range(params.days)
    ]
    logger.info("report_generated rows=%s grouping=%s", len(rows), params.grouping)
    return group_rows(rows, params.grouping)


def _bucket_key(day: date, grouping: str) -> str:
    if grouping == "week":
        week_start = day - timedelta(days=day.weekday())
        return week_start.isoformat()
    if grouping == "month":
        return day.strftime("%Y-%m")
    return day.isoformat()


def group_rows(rows: list[ReportRow], grouping: str) -> list[ReportRow]:
    if grouping in ("none", "day"):
        return rows
    buckets: dict[str, list[int]] = {}
    for row in rows:
        key = _bucket_key(date.fromisoformat(row.date), grouping)
        totals = buckets.setdefault(key, [0, 0, 0])
        totals[0] += row.user_count
        totals[1] += row.session_count
        totals[2] = max(totals[2], row.account_count)
    return [
        ReportRow(date=key, user_count=users, session_count=sessions, account_count=accounts)
        for key, (users, sessions, accounts) in buckets.items()
    ]


def render_csv(rows: list[ReportRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow((row.date, row.user_count, row.session_count, row.account_count))
    return buffer.getvalue()
