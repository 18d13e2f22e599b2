from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from cero.apps.api.main import create_app
from cero.domain.models import AuditLog, User, UserSession
from cero.persistence.db import SessionLocal
from cero.persistence.repos import audit as audit_repo
from cero.services.auth.sessions import hash_session_token
from cero.tests.utils.auth import create_test_user, login


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _audit_rows(user_id: int, action: str) -> list[AuditLog]:
    async with SessionLocal() as session:
        return await audit_repo.list_events(session, user_id=user_id, action=action)


@pytest.mark.asyncio
async def test_login_sets_hardened_cookie_and_records_success() -> None:
    user = await create_test_user()
    async with _client() as client:
        response = await client.post("/login", data={"email": user.email, "password": user.password})
    assert response.status_code == 303
    assert response.headers["location"] == "/dashboard"
    cookie = response.headers["set-cookie"].lower()
    assert "httponly" in cookie
    assert "samesite=strict" in cookie
    assert "path=/" in cookie
    assert "max-age=604800" in cookie

    assert len(await _audit_rows(user.user_id, "login")) == 1
    async with SessionLocal() as session:
        row = await session.get(User, user.user_id)
    assert row.last_login_at is not None


@pytest.mark.asyncio
async def test_email_lookup_ignores_surrounding_whitespace() -> None:
    user = await create_test_user()
    async with _client() as client:
        response = await client.post(
            "/login",
            data={"email": f"  {user.email} ", "password": user.password},
        )
    assert response.status_code == 303


@pytest.mark.asyncio
async def test_wrong_password_and_unknown_email_look_the_same() -> None:
    user = await create_test_user()
    async with _client() as client:
        wrong_password = await client.post("/login", data={"email": user.email, "password": "not-it"})
        unknown_email = await client.post("/login", data={"email": "nobody@example.com", "password": "not-it"})
    assert wrong_password.status_code == 401
    assert unknown_email.status_code == 401
    assert "Invalid email or password." in wrong_password.text
    assert "Invalid email or password." in unknown_email.text
    assert "set-cookie" not in wrong_password.headers


@pytest.mark.asyncio
async def test_login_requires_both_fields() -> None:
    async with _client() as client:
        response = await client.post("/login", data={"email": "someone@example.com"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_logged_in_user_skips_login_form() -> None:
    user = await create_test_user()
    async with _client() as client:
        await login(client, user)
        response = await client.get("/login")
    assert response.status_code == 303
    assert response.headers["location"] == "/dashboard"


@pytest.mark.asyncio
async def test_logout_deletes_session_and_clears_cookie() -> None:
    user = await create_test_user()
    async with _client() as client:
        token = await login(client, user)
        dashboard = await client.get("/dashboard")
        assert dashboard.status_code == 200
        assert user.email in dashboard.text

        response = await client.get("/logout")
        assert response.status_code == 303
        assert response.headers["location"] == "/"

        # Replaying the old cookie no longer works.
        client.cookies.set("session_token", token)
        after = await client.get("/dashboard")
    assert after.status_code == 303
    assert after.headers["location"] == "/login"

    async with SessionLocal() as session:
        result = await session.execute(
            select(UserSession).where(UserSession.token_hash == hash_session_token(token))
        )
        assert result.scalar_one_or_none() is None
    assert len(await _audit_rows(user.user_id, "logout")) == 1


@pytest.mark.asyncio
async def test_logout_without_session_still_redirects() -> None:
    async with _client() as client:
        response = await client.get("/logout")
    assert response.status_code == 303
    assert response.headers["location"] == "/"


@pytest.mark.asyncio
async def test_garbage_cookie_is_treated_as_anonymous() -> None:
    async with _client() as client:
        client.cookies.set("session_token", "not-a-token")
        home = await client.get("/")
        dashboard = await client.get("/dashboard")
    assert home.status_code == 200
    assert dashboard.status_code == 303
