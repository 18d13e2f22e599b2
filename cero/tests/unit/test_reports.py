from __future__ import annotations

from datetime import date

import pytest

from cero.core.errors import AuthorizationError, InputError
from cero.services.reports import (
    ReportParams,
    generate_rows,
    parse_date,
    parse_grouping,
    render_csv,
    validate_params,
)


def test_parse_date_accepts_iso_and_datetime_local_values() -> None:
    assert parse_date("2026-03-01", field="start_date") == date(2026, 3, 1)
    assert parse_date("2026-03-01T10:30", field="start_date") == date(2026, 3, 1)


def test_parse_date_errors_name_the_field() -> None:
    with pytest.raises(InputError, match="Missing end_date"):
        parse_date("", field="end_date")
    with pytest.raises(InputError, match="Invalid start_date"):
        parse_date("03/01/2026", field="start_date")


def test_unknown_grouping_means_none() -> None:
    assert parse_grouping("week") == "week"
    assert parse_grouping("fortnight") == "none"
    assert parse_grouping(None) == "none"


def test_free_plan_limits() -> None:
    week = ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 1, 8))
    validate_params(week, plan="free")

    with pytest.raises(AuthorizationError, match="maximum of 7 days"):
        validate_params(ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 1, 9)), plan="free")
    with pytest.raises(AuthorizationError, match="CSV export not available"):
        validate_params(
            ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 1, 2), export_csv=True),
            plan="free",
        )
    with pytest.raises(AuthorizationError, match="grouping not available"):
        validate_params(
            ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 1, 2), grouping="week"),
            plan="free",
        )


def test_paid_plan_limits() -> None:
    params = ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 3, 31), export_csv=True, grouping="month")
    validate_params(params, plan="pro")
    with pytest.raises(AuthorizationError, match="maximum of 90 days"):
        validate_params(ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 4, 2)), plan="pro")
    validate_params(ReportParams(start_date=date(2025, 1, 1), end_date=date(2026, 1, 1)), plan="enterprise")


def test_empty_or_reversed_range_is_invalid() -> None:
    for end in (date(2026, 1, 1), date(2025, 12, 31)):
        with pytest.raises(InputError, match="Invalid date range"):
            validate_params(ReportParams(start_date=date(2026, 1, 1), end_date=end), plan="enterprise")


def test_rows_cover_each_day_in_range() -> None:
    rows = generate_rows(ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 1, 8)))
    assert len(rows) == 7
    assert rows[0].date == "2026-01-01"
    assert rows[-1].date == "2026-01-07"
    assert [row.user_count for row in rows] == [1, 2, 3, 4, 5, 1, 2]
    assert all(row.account_count == 1 for row in rows)


def test_weekly_and_monthly_grouping() -> None:
    # 2026-01-05 is a Monday.
    weekly = generate_rows(
        ReportParams(start_date=date(2026, 1, 5), end_date=date(2026, 1, 19), grouping="week")
    )
    assert [row.date for row in weekly] == ["2026-01-05", "2026-01-12"]
    assert weekly[0].user_count == 1 + 2 + 3 + 4 + 5 + 1 + 2
    assert weekly[0].account_count == 1

    monthly = generate_rows(
        ReportParams(start_date=date(2026, 1, 30), end_date=date(2026, 2, 3), grouping="month")
    )
    assert [row.date for row in monthly] == ["2026-01", "2026-02"]
    assert sum(row.session_count for row in monthly) == 5 + 6 + 7 + 8


def test_csv_has_header_and_one_line_per_row() -> None:
    rows = generate_rows(ReportParams(start_date=date(2026, 1, 1), end_date=date(2026, 1, 3)))
    assert render_csv(rows) == "Date,Users,Sessions,Accounts\n2026-01-01,1,5,1\n2026-01-02,2,6,1\n"
