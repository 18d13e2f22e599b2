"""Audit trail writer.

Rows go to ``audit_log`` and are never updated afterwards. Writes are
best-effort by default: a failed insert is logged and the user flow that
triggered it carries on. Detail payloads are scrubbed of credential-like
keys before they are stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from cero.core.clock import utc_now
from cero.domain.models import AuditLog
from cero.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
_SENSITIVE_FRAGMENTS = ("password", "token", "secret", "cookie", "csrf", "authorization")


@dataclass(frozen=True)
class RequestTrace:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request | None) -> RequestTrace:
        if request is None:
            return cls()
        return cls(
            request_id=getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )


def sanitize_metadata(value: Any) -> Any:
    # Any key containing a sensitive fragment has its whole value replaced.
    if isinstance(value, dict):
        return {
            str(key): REDACTED
            if any(fragment in str(key).lower() for fragment in _SENSITIVE_FRAGMENTS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def _write(session: AsyncSession, row: AuditLog, *, commit: bool) -> None:
    session.add(row)
    if commit:
        await session.commit()


async def record_event(
    *,
    session: AsyncSession | None = None,
    account_id: int | None,
    user_id: int | None,
    action: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    trace: RequestTrace | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Insert one audit row.

    Without ``session`` the row is written and committed on a private session.
    With one, the row joins the caller's transaction and is committed only
    when ``commit`` is set. ``best_effort=False`` re-raises store failures.
    """
    trace = trace or RequestTrace()
    row = AuditLog(
        occurred_at=occurred_at or utc_now(),
        account_id=account_id,
        user_id=user_id,
        action=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=None if resource_id is None else str(resource_id),
        request_id=trace.request_id,
        ip_address=trace.ip_address,
        user_agent=trace.user_agent,
        details_json=sanitize_metadata(details or {}),
    )

    owns_session = session is None
    target = SessionLocal() if owns_session else session
    try:
        await _write(target, row, commit=commit or owns_session)
    except SQLAlchemyError as exc:
        if commit or owns_session:
            await target.rollback()
        log = logger.warning if best_effort else logger.error
        log("audit_write_failed action=%s request_id=%s", action, trace.request_id, exc_info=exc)
        if not best_effort:
            raise
    finally:
        if owns_session:
            await target.close()


async def record_request_event(
    *,
    session: AsyncSession,
    request: Request | None,
    account_id: int | None,
    user_id: int | None,
    action: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | int | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    # Committed immediately so the row survives whatever the handler does next.
    await record_event(
        session=session,
        account_id=account_id,
        user_id=user_id,
        action=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        trace=RequestTrace.from_request(request),
        commit=True,
    )
