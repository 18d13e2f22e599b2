from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
import secrets

import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.config import get_settings
from cero.domain.models import User


logger = logging.getLogger(__name__)

# bcrypt reads at most 72 bytes of input.
BCRYPT_MAX_BYTES = 72


def _truncate_password(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, *, rounds: int | None = None) -> str:
    # Salted, deliberately slow one-way hash with a configurable cost factor.
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(_truncate_password(password), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    # checkpw recomputes the digest and compares it in constant time.
    try:
        return bcrypt.checkpw(_truncate_password(password), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("password_hash_malformed")
        return False


@lru_cache
def _dummy_hash() -> str:
    return hash_password(secrets.token_hex(16))


async def authenticate(session: AsyncSession, *, email: str, password: str) -> User | None:
    """Return the user for a correct email/password pair, otherwise None.

    Unknown emails still pay for one bcrypt verification so that response
    timing does not reveal which addresses have accounts.
    """
    result = await session.execute(select(User).where(User.email == email.strip()))
    user = result.scalar_one_or_none()
    if user is None:
        await asyncio.to_thread(verify_password, password, _dummy_hash())
        return None
    if not await asyncio.to_thread(verify_password, password, user.password_hash):
        return None
    return user
