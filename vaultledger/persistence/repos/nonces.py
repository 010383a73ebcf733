from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.domain.models import Nonce
from vaultledger.persistence.guards import dialect_insert


async def insert_nonce(session: AsyncSession, *, nonce: str, owner: str) -> bool:
    stmt = dialect_insert(session, Nonce).values(nonce=nonce, owner=owner, used=False)
    stmt = stmt.on_conflict_do_nothing(index_elements=[Nonce.nonce])
    result = await session.execute(stmt)
    return result.rowcount == 1


async def get_nonce(session: AsyncSession, nonce: str) -> Nonce | None:
    result = await session.execute(
        select(Nonce).where(Nonce.nonce == nonce).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def consume_nonce(session: AsyncSession, *, nonce: str, owner: str) -> bool:
    # Exactly one consumer flips used=false -> true; every other caller sees zero rows.
    result = await session.execute(
        update(Nonce)
        .where(Nonce.nonce == nonce, Nonce.owner == owner, Nonce.used.is_(False))
        .values(used=True)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
