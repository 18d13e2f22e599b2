from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from cero.apps.api.deps import get_db
from cero.apps.api.pipeline import RequestContext, admit_request
from cero.apps.api.templating import render
from cero.core.clock import utc_now
from cero.core.config import get_settings
from cero.services.audit import record_request_event
from cero.services.auth.passwords import authenticate
from cero.services.auth.sessions import create_session, delete_session


logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

LOGIN_FAILED_MESSAGE = "Invalid email or password."


@router.get("/")
async def home(request: Request, context: RequestContext = Depends(admit_request)) -> Response:
    return render(request, "home.html")


@router.get("/login")
async def login_form(request: Request, context: RequestContext = Depends(admit_request)) -> Response:
    if context.user is not None:
        return RedirectResponse(url="/dashboard", status_code=303)
    return render(request, "login.html", {"error": None, "email": ""})


@router.post("/login")
async def login(
    request: Request,
    email: str | None = Form(default=None),
    password: str | None = Form(default=None),
    context: RequestContext = Depends(admit_request),
    db: AsyncSession = Depends(get_db),
) -> Response:
    if not email or not email.strip() or not password:
        return render(
            request,
            "login.html",
            {"error": "Email and password are required.", "email": email or ""},
            status_code=400,
        )

    user = await authenticate(db, email=email, password=password)
    if user is None:
        # One message for unknown emails and wrong passwords alike.
        logger.info("login_failed client_ip=%s", context.client_ip)
        await record_request_event(
            session=db,
            request=request,
            account_id=None,
            user_id=None,
            action="login",
            outcome="failure",
            resource_type="session",
            details={"email": email.strip()},
        )
        return render(
            request,
            "login.html",
            {"error": LOGIN_FAILED_MESSAGE, "email": email.strip()},
            status_code=401,
        )

    settings = get_settings()
    user_id = user.id
    account_id = user.account_id
    # Committed together with the new session row.
    user.last_login_at = utc_now()
    raw_token = await create_session(
        db,
        user_id=user_id,
        ip_address=context.client_ip,
        user_agent=context.user_agent,
    )
    logger.info("login_succeeded user_id=%s", user_id)
    await record_request_event(
        session=db,
        request=request,
        account_id=account_id,
        user_id=user_id,
        action="login",
        outcome="success",
        resource_type="session",
    )

    response = RedirectResponse(url="/dashboard", status_code=303)
    response.set_cookie(
        key=settings.session_cookie_name,
        value=raw_token,
        max_age=settings.session_expiry_seconds,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="strict",
    )
    return response


@router.get("/logout")
async def logout(
    request: Request,
    context: RequestContext = Depends(admit_request),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Succeeds with or without a live session.
    await delete_session(db, context.session_token)
    if context.user is not None:
        await record_request_event(
            session=db,
            request=request,
            account_id=context.user.account_id,
            user_id=context.user.user_id,
            action="logout",
            outcome="success",
            resource_type="session",
        )
    settings = get_settings()
    response = RedirectResponse(url="/", status_code=303)
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="strict",
    )
    return response
