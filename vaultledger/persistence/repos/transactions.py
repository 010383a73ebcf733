from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.core.errors import ValidationError
from vaultledger.domain.models import TRANSACTION_KINDS, TRANSACTION_STATUSES, LedgerTransaction
from vaultledger.persistence.guards import dialect_insert


async def insert_transaction(
    session: AsyncSession,
    *,
    signature: str,
    owner: str,
    amount: int | None,
    kind: str,
    status: str = "pending",
) -> bool:
    # Returns False when the signature already exists; the first row's fields are kept.
    if kind not in TRANSACTION_KINDS:
        raise ValidationError(f"unsupported transaction kind: {kind}")
    if status not in TRANSACTION_STATUSES:
        raise ValidationError(f"unsupported transaction status: {status}")
    stmt = dialect_insert(session, LedgerTransaction).values(
        signature=signature,
        owner=owner,
        amount=amount,
        kind=kind,
        status=status,
        retry_count=0,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[LedgerTransaction.signature])
    result = await session.execute(stmt)
    return result.rowcount == 1


async def get_by_signature(session: AsyncSession, signature: str) -> LedgerTransaction | None:
    result = await session.execute(
        select(LedgerTransaction)
        .where(LedgerTransaction.signature == signature)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_for_owner(
    session: AsyncSession, owner: str, *, limit: int = 50, offset: int = 0
) -> list[LedgerTransaction]:
    result = await session.execute(
        select(LedgerTransaction)
        .where(LedgerTransaction.owner == owner)
        .order_by(LedgerTransaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def _transition(
    session: AsyncSession, signature: str, *, from_status: str, to_status: str, bump_retry: bool = False
) -> bool:
    # Status moves only along pending -> confirmed|failed and failed -> pending (retry).
    values: dict = {"status": to_status, "updated_at": func.now()}
    if bump_retry:
        values["retry_count"] = LedgerTransaction.retry_count + 1
    result = await session.execute(
        update(LedgerTransaction)
        .where(LedgerTransaction.signature == signature, LedgerTransaction.status == from_status)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def mark_confirmed(session: AsyncSession, signature: str) -> bool:
    return await _transition(session, signature, from_status="pending", to_status="confirmed")


async def mark_failed(session: AsyncSession, signature: str) -> bool:
    return await _transition(session, signature, from_status="pending", to_status="failed")


async def retry_failed(session: AsyncSession, signature: str) -> bool:
    return await _transition(
        session, signature, from_status="failed", to_status="pending", bump_retry=True
    )
