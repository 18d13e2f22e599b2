from __future__ import annotations

from datetime import datetime, timedelta
import hashlib
import logging
import secrets

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.clock import as_utc, utc_now
from cero.core.config import get_settings
from cero.core.errors import StorageError
from cero.domain.models import User, UserSession


logger = logging.getLogger(__name__)

# 32 random bytes rendered as 64 hex characters.
TOKEN_BYTES = 32
TOKEN_LENGTH = TOKEN_BYTES * 2


class UserContext(BaseModel):
    # Identity resolved from a valid session, immutable once built.
    model_config = ConfigDict(frozen=True)

    user_id: int
    account_id: int
    email: str
    role: str
    session_id: int

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def generate_session_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _is_well_formed(raw_token: str | None) -> bool:
    if not raw_token or len(raw_token) != TOKEN_LENGTH:
        return False
    return all(char in "0123456789abcdef" for char in raw_token)


def is_session_expired(row: UserSession, *, now: datetime, inactivity_window: timedelta) -> bool:
    # Absolute expiry and the inactivity window are both hard limits.
    if now >= as_utc(row.expires_at):
        return True
    return now - as_utc(row.last_activity_at) >= inactivity_window


async def create_session(
    session: AsyncSession,
    *,
    user_id: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> str:
    settings = get_settings()
    issued_at = now or utc_now()
    raw_token = generate_session_token()
    row = UserSession(
        user_id=user_id,
        token_hash=hash_session_token(raw_token),
        created_at=issued_at,
        expires_at=issued_at + timedelta(seconds=settings.session_expiry_seconds),
        last_activity_at=issued_at,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    try:
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("session_create_failed user_id=%s", user_id, exc_info=exc)
        raise StorageError("Failed to create session") from exc
    logger.info("session_created user_id=%s session_id=%s", user_id, row.id)
    return raw_token


async def validate_session(
    session: AsyncSession,
    raw_token: str | None,
    *,
    now: datetime | None = None,
) -> UserContext | None:
    """Resolve a cookie token to the owning user, or None when it is not usable.

    A successful lookup slides ``last_activity_at`` forward; ``expires_at`` is
    left untouched. Storage failures are logged and treated as no session.
    """
    if not _is_well_formed(raw_token):
        return None
    settings = get_settings()
    checked_at = now or utc_now()
    inactivity_window = timedelta(seconds=settings.session_inactivity_seconds)
    try:
        result = await session.execute(
            select(UserSession, User)
            .join(User, User.id == UserSession.user_id)
            .where(UserSession.token_hash == hash_session_token(raw_token))
        )
        row = result.first()
        if row is None:
            return None
        user_session, user = row
        if is_session_expired(user_session, now=checked_at, inactivity_window=inactivity_window):
            logger.info("session_rejected_expired session_id=%s", user_session.id)
            return None
        await session.execute(
            update(UserSession)
            .where(UserSession.id == user_session.id)
            .values(last_activity_at=checked_at)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("session_validate_failed", exc_info=exc)
        return None
    return UserContext(
        user_id=user.id,
        account_id=user.account_id,
        email=user.email,
        role=user.role,
        session_id=user_session.id,
    )


async def delete_session(session: AsyncSession, raw_token: str | None) -> None:
    # Logout succeeds whether or not the token still matches a row.
    if not raw_token:
        return
    try:
        await session.execute(
            delete(UserSession).where(UserSession.token_hash == hash_session_token(raw_token))
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("session_delete_failed", exc_info=exc)


async def sweep_sessions(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove rows that validate_session would reject anyway.
    settings = get_settings()
    swept_at = now or utc_now()
    idle_cutoff = swept_at - timedelta(seconds=settings.session_inactivity_seconds)
    result = await session.execute(
        delete(UserSession).where(
            or_(UserSession.expires_at <= swept_at, UserSession.last_activity_at <= idle_cutoff)
        )
    )
    await session.commit()
    deleted = result.rowcount or 0
    logger.info("sessions_swept deleted=%s", deleted)
    return deleted
