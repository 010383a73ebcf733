from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.domain.models import Timelock


async def create_timelock(
    session: AsyncSession,
    *,
    owner: str,
    amount: int,
    unlock_at: datetime,
    signature: str | None = None,
) -> Timelock:
    row = Timelock(
        owner=owner,
        amount=amount,
        unlock_at=unlock_at,
        signature=signature,
        status="scheduled",
        due_soon_notified=False,
    )
    session.add(row)
    await session.flush()
    return row


async def list_due_soon(session: AsyncSession, *, now: datetime, horizon: datetime) -> list[Timelock]:
    # Scheduled items unlocking inside the horizon that have not been announced yet.
    result = await session.execute(
        select(Timelock)
        .where(
            Timelock.status == "scheduled",
            Timelock.due_soon_notified.is_(False),
            Timelock.unlock_at > now,
            Timelock.unlock_at <= horizon,
        )
        .order_by(Timelock.unlock_at.asc())
    )
    return list(result.scalars().all())


async def list_due(session: AsyncSession, *, now: datetime) -> list[Timelock]:
    result = await session.execute(
        select(Timelock)
        .where(Timelock.status == "scheduled", Timelock.unlock_at <= now)
        .order_by(Timelock.unlock_at.asc())
    )
    return list(result.scalars().all())


async def list_for_owner(session: AsyncSession, owner: str) -> list[Timelock]:
    result = await session.execute(
        select(Timelock).where(Timelock.owner == owner).order_by(Timelock.id.asc())
    )
    return list(result.scalars().all())


async def mark_due_soon_notified(session: AsyncSession, timelock_id: int) -> bool:
    result = await session.execute(
        update(Timelock)
        .where(Timelock.id == timelock_id, Timelock.due_soon_notified.is_(False))
        .values(due_soon_notified=True)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def mark_available(session: AsyncSession, timelock_id: int) -> bool:
    # Concurrent sweeps race here; only the winner emits timelock_available.
    result = await session.execute(
        update(Timelock)
        .where(Timelock.id == timelock_id, Timelock.status == "scheduled")
        .values(status="available")
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
