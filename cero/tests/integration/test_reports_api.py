from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from cero.apps.api.main import create_app
from cero.tests.utils.auth import create_test_user, csrf_token, login


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_free_user_generates_week_report() -> None:
    user = await create_test_user()
    async with _client() as client:
        await login(client, user)
        form = await client.get("/reports")
        response = await client.post(
            "/reports/generate",
            data={"start_date": "2026-01-01", "end_date": "2026-01-08", "csrf_token": csrf_token(client)},
        )
    assert form.status_code == 200
    assert response.status_code == 200
    assert "<td>2026-01-07</td>" in response.text
    assert "<td>2026-01-08</td>" not in response.text


@pytest.mark.asyncio
async def test_free_user_limits_are_enforced() -> None:
    user = await create_test_user()
    async with _client() as client:
        await login(client, user)
        token = csrf_token(client)
        too_long = await client.post(
            "/reports/generate",
            data={"start_date": "2026-01-01", "end_date": "2026-01-09", "csrf_token": token},
        )
        csv = await client.post(
            "/reports/generate",
            data={"start_date": "2026-01-01", "end_date": "2026-01-02", "export_csv": "1", "csrf_token": token},
        )
        grouped = await client.post(
            "/reports/generate",
            data={"start_date": "2026-01-01", "end_date": "2026-01-02", "grouping": "week", "csrf_token": token},
        )
    assert too_long.status_code == 403
    assert "maximum of 7 days" in too_long.text
    assert csv.status_code == 403
    assert grouped.status_code == 403


@pytest.mark.asyncio
async def test_bad_report_input_is_400() -> None:
    user = await create_test_user()
    async with _client() as client:
        await login(client, user)
        token = csrf_token(client)
        bad_date = await client.post(
            "/reports/generate",
            data={"start_date": "yesterday", "end_date": "2026-01-02", "csrf_token": token},
        )
        reversed_range = await client.post(
            "/reports/generate",
            data={"start_date": "2026-01-05", "end_date": "2026-01-01", "csrf_token": token},
        )
        missing_field = await client.post("/reports/generate", data={"csrf_token": token})
    assert bad_date.status_code == 400
    assert "Invalid start_date" in bad_date.text
    assert reversed_range.status_code == 400
    assert missing_field.status_code == 400


@pytest.mark.asyncio
async def test_report_form_requires_csrf() -> None:
    user = await create_test_user()
    async with _client() as client:
        await login(client, user)
        response = await client.post("/reports/generate", data={"start_date": "2026-01-01", "end_date": "2026-01-02"})
        non_ascii = await client.post(
            "/reports/generate",
            data={"start_date": "2026-01-01", "end_date": "2026-01-02", "csrf_token": "é"},
        )
    assert response.status_code == 403
    assert non_ascii.status_code == 403


@pytest.mark.asyncio
async def test_pro_user_gets_grouped_csv() -> None:
    user = await create_test_user(plan="pro")
    async with _client() as client:
        await login(client, user)
        response = await client.post(
            "/reports/generate",
            data={
                "start_date": "2026-01-05",
                "end_date": "2026-01-19",
                "grouping": "week",
                "export_csv": "on",
                "csrf_token": csrf_token(client),
            },
        )
    assert response.status_code == 200
    assert response.text.splitlines() == [
        "Date,Users,Sessions,Accounts",
        "2026-01-05,18,56,1",
        "2026-01-12,22,65,1",
    ]


@pytest.mark.asyncio
async def test_api_requires_api_access_entitlement() -> None:
    user = await create_test_user()
    async with _client() as client:
        await login(client, user)
        response = await client.get("/api/v1/subscription")
        events = await client.get("/api/v1/billing/events")
    assert response.status_code == 403
    body = response.json()
    assert body["error"] == {"code": "AUTH_FORBIDDEN", "message": "API access not available on your plan"}
    assert body["meta"]["api_version"] == "v1"
    assert events.status_code == 403


@pytest.mark.asyncio
async def test_api_subscription_and_events_for_pro_user() -> None:
    user = await create_test_user(plan="pro")
    async with _client() as client:
        await login(client, user)
        subscription = await client.get("/api/v1/subscription")
        events = await client.get("/api/v1/billing/events", params={"limit": 1})
        bad_limit = await client.get("/api/v1/billing/events", params={"limit": 0})
    assert subscription.status_code == 200
    data = subscription.json()["data"]
    assert data["account_id"] == user.account_id
    assert data["effective_plan"] == "pro"
    assert data["max_report_days"] == 90
    assert data["entitlements"]["CSV_EXPORT"] is True
    assert data["entitlements"]["PRIORITY_SUPPORT"] is False
    assert subscription.json()["meta"]["request_id"] == subscription.headers["X-Request-Id"]

    assert events.status_code == 200
    items = events.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["event_type"] == "subscription_update"
    assert bad_limit.status_code == 400
    assert bad_limit.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_admin_ledger_verification_api() -> None:
    user = await create_test_user(plan="pro")
    admin = await create_test_user(role="admin")
    async with _client() as client:
        await login(client, admin)
        response = await client.get(f"/api/v1/admin/accounts/{user.account_id}/ledger")
        missing = await client.get("/api/v1/admin/accounts/999999999/ledger")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["consistent"] is True
    assert data["chain_error"] is None
    assert data["event_count"] == 2
    assert data["replayed"]["plan"] == data["stored"]["plan"] == "pro"
    assert [item["event_type"] for item in data["items"]] == ["subscription_update", "subscription_created"]
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
