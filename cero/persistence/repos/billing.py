from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cero.domain.models import BillingEvent


async def list_events(
    session: AsyncSession,
    *,
    account_id: int,
    event_type: str | None = None,
    newest_first: bool = True,
    offset: int = 0,
    limit: int | None = 50,
) -> list[BillingEvent]:
    stmt = select(BillingEvent).where(BillingEvent.account_id == account_id)
    if event_type:
        stmt = stmt.where(BillingEvent.event_type == event_type)
    if newest_first:
        stmt = stmt.order_by(BillingEvent.occurred_at.desc(), BillingEvent.id.desc())
    else:
        stmt = stmt.order_by(BillingEvent.occurred_at.asc(), BillingEvent.id.asc())
    stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_events_in_commit_order(session: AsyncSession, *, account_id: int) -> list[BillingEvent]:
    # Ids are assigned under the per-account write lock, so id order is commit order.
    result = await session.execute(
        select(BillingEvent).where(BillingEvent.account_id == account_id).order_by(BillingEvent.id.asc())
    )
    return list(result.scalars().all())


async def count_events(session: AsyncSession, *, account_id: int) -> int:
    result = await session.execute(
        select(func.count()).select_from(BillingEvent).where(BillingEvent.account_id == account_id)
    )
    return int(result.scalar_one())
