from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from cero.apps.api.main import create_app
from cero.core.clock import utc_now
from cero.core.errors import StorageError
from cero.persistence.db import SessionLocal
from cero.persistence.repos import audit as audit_repo
from cero.persistence.repos import billing as billing_repo
from cero.services.subscriptions import get_subscription
from cero.tests.utils.auth import create_test_user, csrf_token, login


def _client(app=None) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app or create_app()), base_url="http://test")


async def _audit_actions(user_id: int) -> list[str]:
    async with SessionLocal() as session:
        rows = await audit_repo.list_events(session, user_id=user_id, limit=100)
    return [row.action for row in rows]


@pytest.mark.asyncio
async def test_free_user_upgraded_by_admin_can_export_csv() -> None:
    app = create_app()
    user = await create_test_user()
    admin = await create_test_user(role="admin")

    async with _client(app) as user_client, _client(app) as admin_client:
        await login(user_client, user)
        blocked = await user_client.get("/reports/export")
        assert blocked.status_code == 403
        assert "CSV export not available on your plan" in blocked.text

        await login(admin_client, admin)
        paid = await admin_client.post(
            "/admin/billing/mark-paid",
            data={
                "account_id": str(user.account_id),
                "plan": "pro",
                "duration": "30",
                "amount": "29.99",
                "reference": "INV-42",
                "csrf_token": csrf_token(admin_client),
            },
        )
        assert paid.status_code == 200
        assert "marked as paid" in paid.text

        export = await user_client.get("/reports/export")
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    lines = export.text.strip().split("\n")
    assert lines[0] == "Date,Users,Sessions,Accounts"
    assert len(lines) == 8

    async with SessionLocal() as session:
        events = await billing_repo.list_events_in_commit_order(session, account_id=user.account_id)
    payment = events[-1]
    assert payment.event_type == "payment_received"
    assert payment.amount_cents == 2999
    assert payment.admin_user_id == admin.user_id
    assert "payment" in await _audit_actions(admin.user_id)


@pytest.mark.asyncio
async def test_admin_update_with_grace_keeps_features_after_expiry() -> None:
    user = await create_test_user()
    admin = await create_test_user(role="admin")
    yesterday = (utc_now() - timedelta(days=1)).date().isoformat()

    async with _client() as admin_client:
        await login(admin_client, admin)
        response = await admin_client.post(
            "/admin/billing/update",
            data={
                "account_id": str(user.account_id),
                "plan": "enterprise",
                "status": "grace_period",
                "valid_until": yesterday,
                "grace_days": "7",
                "notes": "card declined",
                "csrf_token": csrf_token(admin_client),
            },
        )
    assert response.status_code == 200
    assert "enterprise (grace_period)" in response.text

    async with SessionLocal() as session:
        subscription = await get_subscription(session, user.account_id)
    assert subscription.plan == "enterprise"
    assert subscription.grace_until is not None
    assert "subscription_update" in await _audit_actions(admin.user_id)

    async with _client() as user_client:
        await login(user_client, user)
        api = await user_client.get("/api/v1/subscription")
    assert api.status_code == 200
    data = api.json()["data"]
    assert data["effective_plan"] == "enterprise"
    assert data["valid"] is True


@pytest.mark.asyncio
async def test_admin_update_rejects_bad_input() -> None:
    user = await create_test_user()
    admin = await create_test_user(role="admin")
    async with _client() as admin_client:
        await login(admin_client, admin)
        token = csrf_token(admin_client)
        bad_plan = await admin_client.post(
            "/admin/billing/update",
            data={
                "account_id": str(user.account_id),
                "plan": "platinum",
                "status": "active",
                "valid_until": "2030-01-01",
                "csrf_token": token,
            },
        )
        bad_date = await admin_client.post(
            "/admin/billing/update",
            data={
                "account_id": str(user.account_id),
                "plan": "pro",
                "status": "active",
                "valid_until": "next tuesday",
                "csrf_token": token,
            },
        )
        bad_amount = await admin_client.post(
            "/admin/billing/mark-paid",
            data={
                "account_id": str(user.account_id),
                "plan": "pro",
                "duration": "30",
                "amount": "lots",
                "csrf_token": token,
            },
        )
    assert bad_plan.status_code == 400
    assert bad_date.status_code == 400
    assert bad_amount.status_code == 400
    async with SessionLocal() as session:
        assert await billing_repo.count_events(session, account_id=user.account_id) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("path", "fields"),
    [
        ("/admin/billing/mark-paid", {"plan": "pro", "duration": "30", "amount": "1e20"}),
        ("/admin/billing/mark-paid", {"plan": "pro", "duration": "30", "amount": "1e99999"}),
        ("/admin/billing/mark-paid", {"plan": "pro", "duration": "3000000", "amount": "10"}),
        ("/admin/billing/update", {"plan": "pro", "status": "active", "valid_until": "9999-12-31", "grace_days": "7"}),
        ("/admin/billing/update", {"plan": "pro", "status": "active", "valid_until": "2030-01-01", "grace_days": "99999999"}),
    ],
)
async def test_admin_forms_reject_out_of_range_values(path: str, fields: dict[str, str]) -> None:
    user = await create_test_user()
    admin = await create_test_user(role="admin")
    async with _client() as admin_client:
        await login(admin_client, admin)
        response = await admin_client.post(
            path,
            data={"account_id": str(user.account_id), "csrf_token": csrf_token(admin_client), **fields},
        )
    assert response.status_code == 400
    async with SessionLocal() as session:
        assert await billing_repo.count_events(session, account_id=user.account_id) == 1


@pytest.mark.asyncio
async def test_mark_paid_storage_failure_shows_error_page(monkeypatch) -> None:
    from cero.apps.api.routes import admin_billing

    async def _failing_mark_paid(*args, **kwargs):
        raise StorageError("Subscription update failed")

    monkeypatch.setattr(admin_billing, "mark_paid", _failing_mark_paid)
    user = await create_test_user()
    admin = await create_test_user(role="admin")
    async with _client() as admin_client:
        await login(admin_client, admin)
        response = await admin_client.post(
            "/admin/billing/mark-paid",
            data={
                "account_id": str(user.account_id),
                "plan": "pro",
                "duration": "30",
                "amount": "10",
                "csrf_token": csrf_token(admin_client),
            },
        )
    assert response.status_code == 500
    assert "Failed to process payment" in response.text


@pytest.mark.asyncio
async def test_admin_forms_require_csrf_token() -> None:
    user = await create_test_user()
    admin = await create_test_user(role="admin")
    async with _client() as admin_client:
        await login(admin_client, admin)
        missing = await admin_client.post(
            "/admin/billing/mark-paid",
            data={"account_id": str(user.account_id), "plan": "pro", "duration": "30", "amount": "10"},
        )
        forged = await admin_client.post("/admin/search", data={"q": "x", "csrf_token": "0" * 64})
    assert missing.status_code == 403
    assert forged.status_code == 403
    async with SessionLocal() as session:
        assert await billing_repo.count_events(session, account_id=user.account_id) == 1


@pytest.mark.asyncio
async def test_admin_search_and_ledger_view() -> None:
    user = await create_test_user()
    admin = await create_test_user(role="admin")
    async with _client() as user_client:
        await login(user_client, user)
    async with _client() as admin_client:
        await login(admin_client, admin)
        search = await admin_client.post(
            "/admin/search",
            data={"q": user.email.split("@")[0], "csrf_token": csrf_token(admin_client)},
        )
        ledger_page = await admin_client.get("/admin/billing", params={"account_id": user.account_id})
        empty_page = await admin_client.get("/admin/billing")
    assert search.status_code == 200
    assert user.email in search.text
    assert ledger_page.status_code == 200
    assert "subscription_created" in ledger_page.text
    assert "matches the stored subscription" in ledger_page.text
    assert "Recent activity" in ledger_page.text
    assert "<td>login</td>" in ledger_page.text
    assert empty_page.status_code == 200
    assert "admin_search" in await _audit_actions(admin.user_id)


@pytest.mark.asyncio
async def test_user_billing_page_shows_plan() -> None:
    user = await create_test_user(plan="pro")
    async with _client() as client:
        await login(client, user)
        response = await client.get("/billing")
    assert response.status_code == 200
    assert "pro" in response.text
