from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from cero.apps.api.response import error_response, get_request_id, is_versioned_request
from cero.apps.api.templating import render
from cero.core.errors import (
    AuthError,
    AuthorizationError,
    CeroError,
    ConsistencyViolation,
    InputError,
    StorageError,
)


logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
GENERIC_ERROR_MESSAGE = "Internal server error"

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

_TITLES: dict[int, str] = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    429: "Too Many Requests",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def error_page(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> Response:
    """Render one error in the form the route family expects.

    ``/api/v1`` callers get the JSON envelope; every other path gets the
    ``error.html`` page. The request id header is set on both.
    """
    response_headers = dict(headers or {})
    response_headers["X-Request-Id"] = get_request_id(request)
    if is_versioned_request(request):
        payload = error_response(request=request, code=code, message=message, details=details)
        return JSONResponse(content=payload, status_code=status_code, headers=response_headers)
    return render(
        request,
        "error.html",
        {
            "status_code": status_code,
            "title": _TITLES.get(status_code, "Error"),
            "message": message,
        },
        status_code=status_code,
        headers=response_headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> Response:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return error_page(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    # Routing misses (404, 405) are raised by Starlette before any dependency runs.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return error_page(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    # Malformed forms, paths and query strings are client errors, reported as 400.
    errors = exc.errors()
    logger.debug("request_validation_failed path=%s errors=%s", request.url.path, len(errors))
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in errors]
    return error_page(
        request,
        status_code=400,
        code="REQUEST_VALIDATION_ERROR",
        message="Invalid request",
        details={"fields": fields},
    )


async def input_error_handler(request: Request, exc: InputError) -> Response:
    logger.debug("input_rejected path=%s message=%s", request.url.path, exc.message)
    return error_page(request, status_code=400, code="BAD_REQUEST", message=exc.message)


async def auth_error_handler(request: Request, exc: AuthError) -> Response:
    logger.info("auth_required path=%s", request.url.path)
    return RedirectResponse(
        url=LOGIN_PATH,
        status_code=303,
        headers={"X-Request-Id": get_request_id(request)},
    )


async def authorization_error_handler(request: Request, exc: AuthorizationError) -> Response:
    logger.warning("access_denied path=%s message=%s", request.url.path, exc.message)
    return error_page(request, status_code=403, code="AUTH_FORBIDDEN", message=exc.message)


async def storage_error_handler(request: Request, exc: CeroError) -> Response:
    # Store failures and ledger mismatches share the generic 500; details stay in the log.
    level = "consistency_violation" if isinstance(exc, ConsistencyViolation) else "storage_error"
    logger.error("%s path=%s message=%s", level, request.url.path, exc.message)
    return error_page(request, status_code=500, code="INTERNAL_ERROR", message=GENERIC_ERROR_MESSAGE)


async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    logger.error(
        "unhandled_exception path=%s request_id=%s",
        request.url.path,
        get_request_id(request),
        exc_info=exc,
    )
    return error_page(request, status_code=500, code="INTERNAL_ERROR", message=GENERIC_ERROR_MESSAGE)


EXCEPTION_HANDLERS = (
    (StarletteHTTPException, starlette_http_exception_handler),
    (HTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (InputError, input_error_handler),
    (AuthError, auth_error_handler),
    (AuthorizationError, authorization_error_handler),
    (StorageError, storage_error_handler),
    (ConsistencyViolation, storage_error_handler),
    (Exception, unhandled_exception_handler),
)
