from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cero.core.clock import utc_now
from cero.core.errors import CeroError, InputError, StorageError
from cero.domain.models import USER_ROLES, Account, Subscription, User
from cero.services.auth.passwords import hash_password
from cero.services.subscriptions import create_default_subscription


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountSearchResult:
    account: Account
    subscription: Subscription | None
    emails: tuple[str, ...]


def normalize_email(email: str) -> str:
    normalized = email.strip()
    if "@" not in normalized or len(normalized) < 3:
        raise InputError("A valid email address is required")
    return normalized


async def provision_account(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    password: str | None = None,
    password_hash: str | None = None,
    role: str = "user",
    now: datetime | None = None,
) -> tuple[Account, User]:
    """Create an account, its first user and the default free subscription.

    Either ``password`` or a precomputed bcrypt ``password_hash`` is required.
    """
    if role not in USER_ROLES:
        raise InputError(f"Unsupported role: {role}")
    if not name.strip():
        raise InputError("Account name is required")
    normalized_email = normalize_email(email)
    if password_hash is None:
        if not password:
            raise InputError("Password is required")
        password_hash = await asyncio.to_thread(hash_password, password)
    created_at = now or utc_now()

    account = Account(name=name.strip(), status="active", created_at=created_at)
    try:
        session.add(account)
        # Flush the account before the user to satisfy FK constraints.
        await session.flush()
        user = User(
            account_id=account.id,
            email=normalized_email,
            password_hash=password_hash,
            role=role,
            created_at=created_at,
        )
        session.add(user)
        await session.flush()
        # Same transaction: an account never exists without its subscription.
        await create_default_subscription(session, account_id=account.id, now=created_at, commit=False)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise InputError("Email is already registered") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("account_provision_failed email_domain=%s", normalized_email.split("@")[-1], exc_info=exc)
        raise StorageError("Failed to create account") from exc
    except CeroError:
        await session.rollback()
        raise

    logger.info("account_provisioned account_id=%s user_id=%s role=%s", account.id, user.id, role)
    return account, user


async def ensure_bootstrap_admin(
    session: AsyncSession,
    *,
    email: str,
    password_hash: str,
) -> User | None:
    # Create the configured administrator once; later starts leave it alone.
    result = await session.execute(select(User).where(User.email == email.strip()))
    if result.scalar_one_or_none() is not None:
        return None
    _account, user = await provision_account(
        session,
        name="Administration",
        email=email,
        password_hash=password_hash,
        role="admin",
    )
    return user


async def search_accounts(session: AsyncSession, *, query: str, limit: int = 25) -> list[AccountSearchResult]:
    term = query.strip()
    if not term:
        return []
    # autoescape keeps "%" and "_" in the query literal.
    fragment = term.lower()
    conditions = [
        func.lower(Account.name).contains(fragment, autoescape=True),
        Account.id.in_(select(User.account_id).where(func.lower(User.email).contains(fragment, autoescape=True))),
    ]
    if term.isdigit():
        conditions.append(Account.id == int(term))
    result = await session.execute(
        select(Account, Subscription)
        .outerjoin(Subscription, Subscription.account_id == Account.id)
        .where(or_(*conditions))
        .order_by(Account.id)
        .limit(limit)
    )
    rows = result.all()
    account_ids = [account.id for account, _subscription in rows]
    emails: dict[int, list[str]] = {account_id: [] for account_id in account_ids}
    if account_ids:
        user_rows = await session.execute(
            select(User.account_id, User.email).where(User.account_id.in_(account_ids)).order_by(User.id)
        )
        for account_id, user_email in user_rows.all():
            emails[account_id].append(user_email)
    return [
        AccountSearchResult(account=account, subscription=subscription, emails=tuple(emails[account.id]))
        for account, subscription in rows
    ]
