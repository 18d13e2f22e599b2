from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cero.core.errors import AuthorizationError
from cero.domain.models import Subscription
from cero.persistence.db import SessionLocal
from cero.services.entitlements import (
    FEATURE_ADVANCED_REPORTS,
    FEATURE_API_ACCESS,
    FEATURE_BASIC_REPORTS,
    FEATURE_CSV_EXPORT,
    FEATURE_KEYS,
    FEATURE_PRIORITY_SUPPORT,
    FEATURE_REPORT_GROUPING,
    PLAN_FEATURES,
    effective_plan,
    entitlement,
    entitlements_for,
    has_entitlement,
    max_report_days,
    plan_allows,
    require_feature,
)
from cero.services.subscriptions import is_valid
from cero.tests.utils.auth import create_test_user


NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def _subscription(
    *,
    plan: str,
    status: str = "active",
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    grace_until: datetime | None = None,
) -> Subscription:
    return Subscription(
        account_id=1,
        plan=plan,
        status=status,
        valid_from=valid_from or NOW - timedelta(days=10),
        valid_until=valid_until or NOW + timedelta(days=10),
        grace_until=grace_until,
    )


def test_every_plan_decides_every_feature() -> None:
    assert plan_allows("free", FEATURE_BASIC_REPORTS)
    for feature_key in FEATURE_KEYS:
        if feature_key != FEATURE_BASIC_REPORTS:
            assert not plan_allows("free", feature_key)
        assert plan_allows("enterprise", feature_key)
    assert plan_allows("pro", FEATURE_CSV_EXPORT)
    assert plan_allows("pro", FEATURE_API_ACCESS)
    assert not plan_allows("pro", FEATURE_PRIORITY_SUPPORT)


def test_plan_table_is_read_only() -> None:
    with pytest.raises(TypeError):
        PLAN_FEATURES["free"] = frozenset(FEATURE_KEYS)  # type: ignore[index]


def test_unknown_plans_and_features_are_denied() -> None:
    assert not plan_allows("platinum", FEATURE_CSV_EXPORT)
    assert not plan_allows("enterprise", "TIME_TRAVEL")


def test_max_report_days_per_plan() -> None:
    assert max_report_days("free") == 7
    assert max_report_days("pro") == 90
    assert max_report_days("enterprise") == 365
    assert max_report_days(None) == 7
    assert max_report_days("unknown") == 7


def test_missing_or_lapsed_subscription_falls_back_to_free() -> None:
    assert effective_plan(None, NOW) == "free"
    lapsed = _subscription(plan="enterprise", valid_until=NOW - timedelta(seconds=1))
    assert effective_plan(lapsed, NOW) == "free"
    assert not has_entitlement(lapsed, FEATURE_ADVANCED_REPORTS, NOW)


def test_entitlement_decisions_are_pure() -> None:
    subscription = _subscription(plan="pro")
    first = [has_entitlement(subscription, key, NOW) for key in FEATURE_KEYS]
    second = [has_entitlement(subscription, key, NOW) for key in FEATURE_KEYS]
    assert first == second
    assert entitlements_for(subscription, NOW) == entitlements_for(subscription, NOW)


def test_expired_subscription_inside_grace_keeps_plan() -> None:
    subscription = _subscription(
        plan="pro",
        status="expired",
        valid_until=NOW - timedelta(days=1),
        grace_until=NOW + timedelta(days=3),
    )
    assert is_valid(subscription, NOW)
    assert has_entitlement(subscription, FEATURE_CSV_EXPORT, NOW)
    assert has_entitlement(subscription, FEATURE_REPORT_GROUPING, NOW)

    after_grace = NOW + timedelta(days=3, seconds=1)
    assert not is_valid(subscription, after_grace)
    assert not has_entitlement(subscription, FEATURE_CSV_EXPORT, after_grace)
    assert has_entitlement(subscription, FEATURE_BASIC_REPORTS, after_grace)


def test_active_subscription_outside_window_is_invalid() -> None:
    not_started = _subscription(plan="pro", valid_from=NOW + timedelta(hours=1))
    assert not is_valid(not_started, NOW)
    assert not is_valid(None, NOW)
    cancelled = _subscription(plan="pro", status="cancelled")
    assert not is_valid(cancelled, NOW)


def test_entitlements_for_reports_basic_config() -> None:
    entitlements = entitlements_for(_subscription(plan="pro"), NOW)
    assert entitlements[FEATURE_BASIC_REPORTS].config == {"max_days": 90}
    assert entitlements[FEATURE_CSV_EXPORT].enabled
    assert not entitlements[FEATURE_PRIORITY_SUPPORT].enabled


@pytest.mark.asyncio
async def test_store_backed_entitlement_and_require_feature() -> None:
    free_user = await create_test_user()
    pro_user = await create_test_user(plan="pro")
    async with SessionLocal() as session:
        assert await entitlement(session, free_user.account_id, FEATURE_BASIC_REPORTS)
        assert not await entitlement(session, free_user.account_id, FEATURE_CSV_EXPORT)
        assert await entitlement(session, pro_user.account_id, FEATURE_CSV_EXPORT)
        # Accounts without any subscription row are treated as free.
        assert not await entitlement(session, 987654321, FEATURE_CSV_EXPORT)

        await require_feature(session=session, account_id=pro_user.account_id, feature_key=FEATURE_API_ACCESS)
        with pytest.raises(AuthorizationError) as exc_info:
            await require_feature(
                session=session,
                account_id=free_user.account_id,
                feature_key=FEATURE_API_ACCESS,
                message="API access not available on your plan",
            )
    assert exc_info.value.message == "API access not available on your plan"
