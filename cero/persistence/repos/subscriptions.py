from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cero.domain.models import Subscription


async def get_by_account(session: AsyncSession, account_id: int) -> Subscription | None:
    # populate_existing refreshes rows already held in the identity map.
    result = await session.execute(
        select(Subscription)
        .where(Subscription.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
