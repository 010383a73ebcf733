from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.domain.models import ReconciliationLog


async def insert_log(
    session: AsyncSession,
    *,
    vault_owner: str,
    settlement_account: str | None,
    db_balance: int,
    chain_balance: int,
    discrepancy: int,
    threshold: int,
) -> ReconciliationLog:
    row = ReconciliationLog(
        vault_owner=vault_owner,
        settlement_account=settlement_account,
        db_balance=db_balance,
        chain_balance=chain_balance,
        discrepancy=discrepancy,
        threshold=threshold,
    )
    session.add(row)
    await session.flush()
    return row


async def list_logs(
    session: AsyncSession, *, vault_owner: str | None = None, limit: int = 100
) -> list[ReconciliationLog]:
    stmt = select(ReconciliationLog)
    if vault_owner is not None:
        stmt = stmt.where(ReconciliationLog.vault_owner == vault_owner)
    result = await session.execute(stmt.order_by(ReconciliationLog.id.desc()).limit(limit))
    return list(result.scalars().all())
