from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from types import MappingProxyType
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.clock import utc_now
from cero.core.errors import AuthorizationError
from cero.domain.models import Subscription
from cero.services.subscriptions import get_subscription, is_valid


logger = logging.getLogger(__name__)

DEFAULT_PLAN_ID = "free"

FEATURE_BASIC_REPORTS = "BASIC_REPORTS"
FEATURE_ADVANCED_REPORTS = "ADVANCED_REPORTS"
FEATURE_EXTENDED_DATE_RANGE = "EXTENDED_DATE_RANGE"
FEATURE_CSV_EXPORT = "CSV_EXPORT"
FEATURE_REPORT_GROUPING = "REPORT_GROUPING"
FEATURE_API_ACCESS = "API_ACCESS"
FEATURE_PRIORITY_SUPPORT = "PRIORITY_SUPPORT"

FEATURE_KEYS = (
    FEATURE_BASIC_REPORTS,
    FEATURE_ADVANCED_REPORTS,
    FEATURE_EXTENDED_DATE_RANGE,
    FEATURE_CSV_EXPORT,
    FEATURE_REPORT_GROUPING,
    FEATURE_API_ACCESS,
    FEATURE_PRIORITY_SUPPORT,
)

# Every plan decides every feature. Pro deliberately lacks priority support.
PLAN_FEATURES: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        "free": frozenset({FEATURE_BASIC_REPORTS}),
        "pro": frozenset(
            {
                FEATURE_BASIC_REPORTS,
                FEATURE_ADVANCED_REPORTS,
                FEATURE_EXTENDED_DATE_RANGE,
                FEATURE_CSV_EXPORT,
                FEATURE_REPORT_GROUPING,
                FEATURE_API_ACCESS,
            }
        ),
        "enterprise": frozenset(FEATURE_KEYS),
    }
)

PLAN_MAX_REPORT_DAYS: Mapping[str, int] = MappingProxyType({"free": 7, "pro": 90, "enterprise": 365})
DEFAULT_MAX_REPORT_DAYS = 7


@dataclass(frozen=True)
class FeatureEntitlement:
    enabled: bool
    config: dict[str, Any] | None = None


def plan_allows(plan: str, feature_key: str) -> bool:
    # Unknown plans collapse to free; unknown features are denied.
    features = PLAN_FEATURES.get(plan, PLAN_FEATURES[DEFAULT_PLAN_ID])
    return feature_key in features


def max_report_days(plan: str | None) -> int:
    if plan is None:
        return DEFAULT_MAX_REPORT_DAYS
    return PLAN_MAX_REPORT_DAYS.get(plan, DEFAULT_MAX_REPORT_DAYS)


def effective_plan(subscription: Subscription | None, now: datetime) -> str:
    # Missing or lapsed subscriptions fall back to the most restrictive plan.
    if subscription is None or not is_valid(subscription, now):
        return DEFAULT_PLAN_ID
    if subscription.plan not in PLAN_FEATURES:
        return DEFAULT_PLAN_ID
    return subscription.plan


def has_entitlement(subscription: Subscription | None, feature_key: str, now: datetime) -> bool:
    return plan_allows(effective_plan(subscription, now), feature_key)


def entitlements_for(subscription: Subscription | None, now: datetime) -> dict[str, FeatureEntitlement]:
    plan = effective_plan(subscription, now)
    entitlements: dict[str, FeatureEntitlement] = {}
    for feature_key in FEATURE_KEYS:
        config = {"max_days": max_report_days(plan)} if feature_key == FEATURE_BASIC_REPORTS else None
        entitlements[feature_key] = FeatureEntitlement(plan_allows(plan, feature_key), config)
    return entitlements


async def entitlement(
    session: AsyncSession,
    account_id: int,
    feature_key: str,
    *,
    now: datetime | None = None,
) -> bool:
    subscription = await get_subscription(session, account_id)
    return has_entitlement(subscription, feature_key, now or utc_now())


async def require_feature(
    *,
    session: AsyncSession,
    account_id: int,
    feature_key: str,
    message: str | None = None,
) -> None:
    if await entitlement(session, account_id, feature_key):
        return
    logger.warning("feature_not_enabled account_id=%s feature=%s", account_id, feature_key)
    raise AuthorizationError(message or "Feature not enabled for account plan")
