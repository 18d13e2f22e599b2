from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware normally sets this; handlers reached without it still get a stable id.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def _meta(request: Request) -> ResponseMeta:
    return ResponseMeta(request_id=get_request_id(request))


def success_response(*, request: Request, data: Any) -> Any:
    """Wrap ``data`` in the JSON envelope for ``/api/v1`` callers.

    Unversioned routes such as ``/health`` return ``data`` as is.
    """
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message, details=details),
        meta=_meta(request),
    )
    # Omit "details" when there are none.
    return envelope.model_dump(exclude_none=True)
