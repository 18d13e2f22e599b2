from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import Request
from fastapi.templating import Jinja2Templates
from starlette.responses import Response

from cero.core.config import get_settings
from cero.services.auth.csrf import issue_csrf_token


templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def render(
    request: Request,
    name: str,
    context: dict[str, Any] | None = None,
    *,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> Response:
    # Every page gets the signed-in user and, when there is a session, a CSRF token for its forms.
    request_context = getattr(request.state, "context", None)
    user = request_context.user if request_context is not None else None
    page: dict[str, Any] = {"user": user, "app_name": get_settings().app_name, "csrf_token": None}
    if user is not None and request_context.session_token:
        page["csrf_token"] = issue_csrf_token(request_context.session_token)
    page.update(context or {})
    return templates.TemplateResponse(request, name, page, status_code=status_code, headers=headers)
