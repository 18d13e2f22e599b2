"""Per-request admission: parse, rate limit, identify, authorize.

Every mounted route runs ``admit_request`` as an application dependency.
Each stage returns a new frozen ``RequestContext``; the final one is stored
on ``request.state.context`` and handed to the route handler. A request that
fails a stage never reaches its handler.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from cero.apps.api.deps import get_db
from cero.apps.api.rate_limit import enforce_rate_limit
from cero.apps.api.response import get_request_id
from cero.apps.api.route_table import RoutePolicy, policy_for
from cero.core.config import get_settings
from cero.core.errors import AuthError, AuthorizationError
from cero.services.audit import record_request_event
from cero.services.auth.csrf import verify_csrf_token
from cero.services.auth.sessions import UserContext, validate_session


logger = logging.getLogger(__name__)

STAGE_RECEIVED = "received"
STAGE_PARSED = "parsed"
STAGE_IDENTIFIED = "identified"
STAGE_AUTHORIZED = "authorized"
STAGE_DISPATCHED = "dispatched"

CSRF_FIELD = "csrf_token"


class RequestContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    method: str
    path: str
    route_path: str | None = None
    client_ip: str
    user_agent: str | None = None
    session_token: str | None = None
    user: UserContext | None = None
    policy: RoutePolicy | None = None
    stage: str = STAGE_RECEIVED


def receive(request: Request) -> RequestContext:
    return RequestContext(
        request_id=get_request_id(request),
        method=request.method.upper(),
        path=request.url.path,
        client_ip=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent"),
    )


def parse(request: Request, context: RequestContext) -> RequestContext:
    # Look the matched route up in the static table; a route without a policy is closed.
    route = request.scope.get("route")
    route_path = getattr(route, "path", None)
    policy = policy_for(context.method, route_path) if route_path else None
    if policy is None:
        logger.error("route_policy_missing method=%s path=%s", context.method, context.path)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    session_token = request.cookies.get(get_settings().session_cookie_name) or None
    return context.model_copy(
        update={
            "route_path": route_path,
            "policy": policy,
            "session_token": session_token,
            "stage": STAGE_PARSED,
        }
    )


async def identify(db: AsyncSession, context: RequestContext) -> RequestContext:
    # No cookie, an unknown token and an expired one all leave the request anonymous.
    user = await validate_session(db, context.session_token) if context.session_token else None
    return context.model_copy(update={"user": user, "stage": STAGE_IDENTIFIED})


async def authorize(request: Request, db: AsyncSession, context: RequestContext) -> RequestContext:
    policy = context.policy
    if policy is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if policy.needs_session and context.user is None:
        raise AuthError("Login required")
    if policy.needs_admin and not context.user.is_admin:
        await record_request_event(
            session=db,
            request=request,
            account_id=context.user.account_id,
            user_id=context.user.user_id,
            action="admin_denied",
            outcome="failure",
            resource_type="route",
            resource_id=context.route_path,
            details={"method": context.method, "path": context.path},
        )
        raise AuthorizationError("Admin access required")
    return context.model_copy(update={"stage": STAGE_AUTHORIZED})


async def admit_request(request: Request, db: AsyncSession = Depends(get_db)) -> RequestContext:
    context = parse(request, receive(request))
    await enforce_rate_limit(request=request, db=db, client_ip=context.client_ip)
    context = await identify(db, context)
    context = await authorize(request, db, context)
    context = context.model_copy(update={"stage": STAGE_DISPATCHED})
    request.state.context = context
    return context


def require_user(context: RequestContext = Depends(admit_request)) -> UserContext:
    # Session routes only; authorize() has already rejected anonymous callers.
    if context.user is None:
        raise AuthError("Login required")
    return context.user


async def require_csrf(request: Request, context: RequestContext = Depends(admit_request)) -> None:
    """Reject a session POST whose form lacks a token bound to its session cookie."""
    form = await request.form()
    candidate = form.get(CSRF_FIELD)
    if not isinstance(candidate, str) or not verify_csrf_token(context.session_token, candidate):
        logger.warning("csrf_rejected path=%s", context.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "CSRF_INVALID", "message": "Invalid or missing CSRF token"},
        )
